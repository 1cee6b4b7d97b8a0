"""Checks on the Postgres schema that the in-memory store mirrors."""

import re
from pathlib import Path

SCHEMA = (Path(__file__).resolve().parent.parent / "scripts" / "schema.sql").read_text()


def _table(name: str) -> str:
    match = re.search(rf"CREATE TABLE IF NOT EXISTS {name} \((.*?)\n\);", SCHEMA, re.S)
    assert match, f"table {name} missing"
    return match.group(1)


def test_namespace_names_unique_case_sensitively():
    assert re.search(r"\bname\s+TEXT NOT NULL UNIQUE", _table("namespace"))
    assert not re.search(r"ON namespace \(UPPER\(name\)\)", SCHEMA)


def test_extension_names_unique_ignoring_case_per_namespace():
    assert "ON extension (namespace_id, UPPER(name))" in SCHEMA


def test_version_columns_sort_by_code_point():
    version_table = _table("extension_version")
    assert re.search(r'\bversion\s+TEXT COLLATE "C"', version_table)
    assert re.search(r'\btarget_platform\s+TEXT COLLATE "C"', version_table)
