import ast
import importlib.util
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def load_core_copy():
    spec = importlib.util.spec_from_file_location("study_core_env_copy", ROOT / "study_core.py")
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


def test_core_reads_model_and_flashcard_format_from_env(monkeypatch):
    monkeypatch.setenv("GEMINI_MODEL", "gemini-test-model")
    monkeypatch.setenv("FLASHCARD_OUTPUT", "lines")
    core = load_core_copy()
    assert core.MODEL_ID == "gemini-test-model"
    assert core.FLASHCARD_OUTPUT == "lines"


def test_app_loads_dotenv_before_importing_core():
    tree = ast.parse((ROOT / "study_app.py").read_text(encoding="utf-8"))
    dotenv_line = next(
        node.lineno for node in tree.body
        if isinstance(node, ast.Expr) and isinstance(node.value, ast.Call)
        and getattr(node.value.func, "id", None) == "load_dotenv"
    )
    core_import_line = next(
        node.lineno for node in tree.body
        if isinstance(node, ast.ImportFrom) and node.module == "study_core"
    )
    assert dotenv_line < core_import_line
