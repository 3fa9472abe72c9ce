from __future__ import annotations

# ==============================
# Tests: Architecture Guardrails
# ==============================

import ast
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

REPO_ROOT = Path(__file__).resolve().parents[2]


def _iter_python_files(root: Path) -> Iterable[Path]:
    for path in root.rglob("*.py"):
        if path.is_file():
            yield path


def _imports(path: Path) -> List[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    modules: List[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            modules.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module and node.level == 0:
            modules.append(node.module)
    return modules


def _offenders(root: Path, forbidden: Sequence[str]) -> List[Tuple[str, str]]:
    found: List[Tuple[str, str]] = []
    for path in _iter_python_files(root):
        for module in _imports(path):
            if any(module == prefix or module.startswith(prefix + ".") for prefix in forbidden):
                found.append((str(path.relative_to(REPO_ROOT)), module))
    return found


def _assert_clean(offenders: List[Tuple[str, str]], what: str) -> None:
    if offenders:
        details = "\n".join(f"{path}: {module}" for path, module in offenders)
        raise AssertionError(f"Forbidden imports found in {what}:\n{details}")


def test_core_does_not_import_front_ends() -> None:
    _assert_clean(_offenders(REPO_ROOT / "tiller", ["console"]), "tiller/")


def test_tools_do_not_import_llm_providers() -> None:
    _assert_clean(_offenders(REPO_ROOT / "tiller" / "tools", ["tiller.models", "openai"]), "tiller/tools/")


def test_contracts_only_depend_on_contracts() -> None:
    forbidden = [
        "tiller.config",
        "tiller.events",
        "tiller.governance",
        "tiller.logging",
        "tiller.memory",
        "tiller.models",
        "tiller.orchestrator",
        "tiller.tools",
        "tiller.utils",
        "console",
    ]
    _assert_clean(_offenders(REPO_ROOT / "tiller" / "contracts", forbidden), "tiller/contracts/")


def test_only_the_loader_reads_the_environment() -> None:
    offenders: List[Tuple[str, str]] = []
    for root in (REPO_ROOT / "tiller", REPO_ROOT / "console"):
        for path in _iter_python_files(root):
            if path.name == "loader.py":
                continue
            source = path.read_text(encoding="utf-8")
            for needle in ("os.getenv(", "os.environ.get(", "os.environ["):
                if needle in source:
                    offenders.append((str(path.relative_to(REPO_ROOT)), needle))
    _assert_clean(offenders, "modules outside the config loader")
