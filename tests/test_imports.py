import importlib
from pathlib import Path

import pytest

PACKAGE_ROOT = Path(__file__).parent.parent / "GridInfer"


def module_names():
    for path in sorted(PACKAGE_ROOT.rglob("*.py")):
        parts = path.relative_to(PACKAGE_ROOT.parent).with_suffix("").parts
        if parts[-1] == "__init__":
            parts = parts[:-1]
        yield ".".join(parts)


@pytest.mark.parametrize("module_name", list(module_names()))
def test_import_module(module_name):
    """Every GridInfer module imports cleanly."""
    importlib.import_module(module_name)
