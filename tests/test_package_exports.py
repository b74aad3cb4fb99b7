import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    # Ensure top-level convenience imports are available (regression guard)
    import sep_engine

    # Access via attribute (lazy import)
    assert hasattr(sep_engine, "SessionEngine")
    assert hasattr(sep_engine, "create_app")

    # Import directly
    from sep_engine import EngineConfig, SessionEngine  # noqa: F401

    # Commit-reveal helpers also exposed
    from sep_engine import build_tape, resolve, verify_reveal  # noqa: F401

    assert "audit_sessions" in dir(sep_engine)

    # Ensure module caching works
    importlib.reload(sep_engine)


def test_unknown_attribute_raises():
    import pytest

    import sep_engine

    with pytest.raises(AttributeError):
        getattr(sep_engine, "NoSuchThing")


def test_version_export_matches_pyproject():
    import sep_engine

    assert hasattr(sep_engine, "__version__")
    assert sep_engine.__version__ == _read_pyproject_version()
