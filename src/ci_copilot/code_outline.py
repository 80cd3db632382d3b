"""
AST outline of a Python module.

Used by the rule-based documentation and test generators: public classes,
their public methods, and top-level functions with signatures and the first
line of each docstring.
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class FunctionOutline:
    name:       str
    signature:  str
    summary:    str = ""
    is_async:   bool = False
    lineno:     int = 0


@dataclass
class ClassOutline:
    name:     str
    bases:    list[str] = field(default_factory=list)
    summary:  str = ""
    methods:  list[FunctionOutline] = field(default_factory=list)
    lineno:   int = 0


@dataclass
class ModuleOutline:
    path:      str
    summary:   str = ""
    classes:   list[ClassOutline] = field(default_factory=list)
    functions: list[FunctionOutline] = field(default_factory=list)
    syntax_error: Optional[str] = None

    @property
    def public_names(self) -> list[str]:
        return [c.name for c in self.classes] + [f.name for f in self.functions]


def _first_line(node) -> str:
    doc = ast.get_docstring(node)
    return doc.strip().splitlines()[0] if doc else ""


def _signature(node: ast.FunctionDef | ast.AsyncFunctionDef) -> str:
    args = ast.unparse(node.args)
    returns = f" -> {ast.unparse(node.returns)}" if node.returns else ""
    prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
    return f"{prefix} {node.name}({args}){returns}"


def _function(node) -> FunctionOutline:
    return FunctionOutline(
        name      = node.name,
        signature = _signature(node),
        summary   = _first_line(node),
        is_async  = isinstance(node, ast.AsyncFunctionDef),
        lineno    = node.lineno,
    )


def outline_module(source: str, path: str = "<string>") -> ModuleOutline:
    """Parse *source*; a SyntaxError yields an empty outline with ``syntax_error`` set."""
    try:
        tree = ast.parse(source, filename=path)
    except SyntaxError as exc:
        logger.debug("Cannot outline %s: %s", path, exc)
        return ModuleOutline(path=path, syntax_error=f"line {exc.lineno}: {exc.msg}")

    outline = ModuleOutline(path=path, summary=_first_line(tree))
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            if not node.name.startswith("_"):
                outline.functions.append(_function(node))
        elif isinstance(node, ast.ClassDef) and not node.name.startswith("_"):
            cls = ClassOutline(
                name    = node.name,
                bases   = [ast.unparse(b) for b in node.bases],
                summary = _first_line(node),
                lineno  = node.lineno,
            )
            for item in node.body:
                if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    if not item.name.startswith("_") or item.name == "__init__":
                        cls.methods.append(_function(item))
            outline.classes.append(cls)
    return outline
