"""
Check that admin mutation routes audit their change inside the same transaction.

Every POST/PUT/PATCH/DELETE handler depending on ``require_admin`` must call
``record_admin_action`` before its first ``db.commit()``.

Usage:
    python -m scripts.check_admin_patterns [routes_dir]
"""

from __future__ import annotations

import ast
import sys
from pathlib import Path
from typing import Iterable, Optional

MUTATING_METHODS = {"post", "put", "delete", "patch"}


def _call_name(node: ast.AST) -> Optional[str]:
    if not isinstance(node, ast.Call):
        return None
    if isinstance(node.func, ast.Name):
        return node.func.id
    if isinstance(node.func, ast.Attribute):
        return node.func.attr
    return None


def _decorator_is_mutation(dec: ast.AST) -> bool:
    return isinstance(dec, ast.Call) and isinstance(dec.func, ast.Attribute) and dec.func.attr in MUTATING_METHODS


def _depends_on_admin(node: ast.AST) -> bool:
    if _call_name(node) != "Depends":
        return False
    for arg in node.args:
        if isinstance(arg, ast.Name) and arg.id == "require_admin":
            return True
        if isinstance(arg, ast.Attribute) and arg.attr == "require_admin":
            return True
    return False


def _iter_admin_mutations(tree: ast.AST):
    for node in ast.walk(tree):
        if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            continue
        if not any(_decorator_is_mutation(dec) for dec in node.decorator_list):
            continue
        defaults: Iterable[ast.AST] = list(node.args.defaults or []) + list(node.args.kw_defaults or [])
        if any(_depends_on_admin(d) for d in defaults if d is not None):
            yield node


def audit_problem(func: ast.AST) -> Optional[str]:
    """Describe what is wrong with one handler, or None when it is compliant."""
    audit_line = None
    commit_line = None
    for node in ast.walk(func):
        name = _call_name(node)
        if name == "record_admin_action":
            audit_line = node.lineno if audit_line is None else min(audit_line, node.lineno)
        elif name == "commit":
            commit_line = node.lineno if commit_line is None else min(commit_line, node.lineno)
    if audit_line is None:
        return "missing record_admin_action"
    if commit_line is not None and commit_line < audit_line:
        return "commits before record_admin_action"
    return None


def main(argv: list[str]) -> int:
    backend_dir = Path(__file__).resolve().parents[1]
    routes_dir = Path(argv[0]) if argv else backend_dir / "dashchat" / "routes"
    problems: list[str] = []

    for route_file in sorted(routes_dir.glob("*.py")):
        try:
            tree = ast.parse(route_file.read_text())
        except SyntaxError as exc:
            print(f"Syntax error in {route_file}: {exc}")
            return 1
        for func in _iter_admin_mutations(tree):
            problem = audit_problem(func)
            if problem:
                problems.append(f"{route_file.name}:{func.lineno} ({func.name}): {problem}")

    if problems:
        print("Admin mutations with audit problems:")
        for entry in problems:
            print(f" - {entry}")
        return 1

    print("Admin mutations audit before commit")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
