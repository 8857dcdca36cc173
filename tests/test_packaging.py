import re
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
PYPROJECT = (ROOT / "pyproject.toml").read_text(encoding="utf-8")


def declared():
    block = re.search(r"^dependencies = \[(.*?)\]", PYPROJECT, re.S | re.M).group(1)
    return {re.split(r"[<>=!~ ]", dep.strip())[0].lower() for dep in re.findall(r'"([^"]+)"', block)}


def test_directly_imported_distributions_are_declared():
    deps = declared()
    for dist in ("google-generativeai", "google-api-core", "sqlalchemy", "tenacity", "beautifulsoup4"):
        assert dist in deps, dist


def test_readme_is_a_real_file():
    readme = re.search(r'^readme = "([^"]+)"', PYPROJECT, re.M).group(1)
    assert readme == "README.md"
    assert (ROOT / readme).is_file()
