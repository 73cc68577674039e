"""Audit tool for event templates.

Compares the ``logger.log_event(domain, action, ...)`` calls found in the
package with the entries of ``termirc/logs/event_templates.json``.
Exit status 1 when a call has no template.
"""

from __future__ import annotations

import argparse
import ast
import importlib.util
import json
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parent.parent / "termirc"
TEMPLATES_JSON = PACKAGE_ROOT / "logs" / "event_templates.json"

# Load the catalog module by path so the audit runs without installing the package.
_CATALOG = PACKAGE_ROOT / "logs" / "event_catalog.py"
_spec = importlib.util.spec_from_file_location("termirc_event_catalog", _CATALOG)
if _spec is None or _spec.loader is None:  # pragma: no cover
    raise SystemExit(f"Cannot load event catalog from {_CATALOG}")
_catalog = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(_catalog)
EVENT_TEMPLATES: dict[tuple[str, str], str] = _catalog.EVENT_TEMPLATES


def iter_python_files(root: Path) -> Iterable[Path]:
    for path in root.rglob("*.py"):
        if not path.name.startswith("."):
            yield path


def _gather_string_literals(expr: ast.AST) -> set[str]:
    """String constants in ``expr``, following both branches of a ternary."""
    out: set[str] = set()
    if isinstance(expr, ast.Constant) and isinstance(expr.value, str):
        out.add(expr.value)
    elif isinstance(expr, ast.IfExp):
        out.update(_gather_string_literals(expr.body))
        out.update(_gather_string_literals(expr.orelse))
    return out


def _extract_from_call(node: ast.Call) -> set[tuple[str, str]]:
    domain_expr: ast.AST | None = node.args[0] if node.args else None
    action_expr: ast.AST | None = node.args[1] if len(node.args) > 1 else None
    for kw in node.keywords:
        if kw.arg == "domain":
            domain_expr = kw.value
        elif kw.arg == "action":
            action_expr = kw.value
    if not (isinstance(domain_expr, ast.Constant) and isinstance(domain_expr.value, str)):
        return set()
    if action_expr is None:
        return set()
    return {(domain_expr.value, action) for action in _gather_string_literals(action_expr)}


def extract_references(paths: Iterable[Path]) -> set[tuple[str, str]]:
    refs: set[tuple[str, str]] = set()
    for path in paths:
        try:
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        except (OSError, UnicodeDecodeError, SyntaxError) as e:
            print(f"Skipping {path}: {e}", file=sys.stderr)
            continue
        for node in ast.walk(tree):
            if (
                isinstance(node, ast.Call)
                and isinstance(node.func, ast.Attribute)
                and node.func.attr == "log_event"
            ):
                refs.update(_extract_from_call(node))
    return refs


def load_templates_from_json(path: Path = TEMPLATES_JSON) -> set[tuple[str, str]]:
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        return set()
    return {
        (domain, action)
        for domain, actions in raw.items()
        if isinstance(actions, dict)
        for action in actions
    }


@dataclass(slots=True)
class DiffResult:
    missing: set[tuple[str, str]]
    unused: set[tuple[str, str]]
    discrepancy: set[tuple[str, str]]


def diff(root: Path = PACKAGE_ROOT, templates_json: Path = TEMPLATES_JSON) -> DiffResult:
    code_refs = extract_references(iter_python_files(root))
    json_templates = load_templates_from_json(templates_json)
    loaded = set(EVENT_TEMPLATES) - {("app", "load_error")}
    return DiffResult(
        missing=code_refs - json_templates,
        unused=json_templates - code_refs,
        discrepancy=loaded ^ json_templates,
    )


def prune_unused(unused: set[tuple[str, str]], path: Path = TEMPLATES_JSON) -> bool:
    if not unused:
        return False
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    for domain, action in unused:
        data.get(domain, {}).pop(action, None)
    data = {domain: actions for domain, actions in data.items() if actions}
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True, ensure_ascii=False)
        f.write("\n")
    return True


def parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit event templates vs code usages")
    parser.add_argument("--json-output", action="store_true", help="Emit JSON diff result")
    parser.add_argument(
        "--prune-unused", action="store_true", help="Remove unused templates from JSON file"
    )
    return parser.parse_args(argv)


def emit_human(d: DiffResult) -> None:
    print("Event Template Audit Report")
    print("============================")
    for title, items in (("Missing templates", d.missing), ("Unused templates", d.unused)):
        if items:
            print(f"{title} ({len(items)}):")
            for domain, action in sorted(items):
                print(f"  - {domain}:{action}")
        else:
            print(f"No {title.lower()} found.")
        print()
    if d.discrepancy:
        print("Discrepancy between JSON and loaded templates (likely load error):")
        for domain, action in sorted(d.discrepancy):
            print(f"  - {domain}:{action}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    result = diff()
    if args.prune_unused and prune_unused(result.unused):
        print(f"Pruned {len(result.unused)} unused templates from JSON file")
        _catalog.reload_event_templates()
        result = diff()
    if args.json_output:
        print(
            json.dumps(
                {
                    "missing": sorted(result.missing),
                    "unused": sorted(result.unused),
                    "discrepancy": sorted(result.discrepancy),
                },
                indent=2,
            )
        )
    else:
        emit_human(result)
    return 1 if result.missing else 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
