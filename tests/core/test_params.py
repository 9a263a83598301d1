from __future__ import annotations

import pytest

from depthscene.core.config.params import ParamBundle, fspec, ispec, load_all, save_all


def _bundle(tag="demo"):
    return ParamBundle(tag, [ispec("cnt", 5, "Count"), fspec("rate", 0.25, "Rate"), fspec("big", 1234.0)])


def test_values_are_typed_attributes():
    b = _bundle()
    assert b.cnt == 5 and isinstance(b.cnt, int)
    b.cnt = 7.9
    assert b.cnt == 7
    b.rate = "0.5"
    assert b.rate == 0.5
    assert b.keys() == ["cnt", "rate", "big"]
    with pytest.raises(AttributeError):
        _ = b.missing


def test_duplicate_keys_rejected():
    with pytest.raises(ValueError):
        ParamBundle("bad", [ispec("a", 1), fspec("a", 2.0)])


def test_line_format():
    assert _bundle().line() == "demo\t5 0.25 1234"


def test_set_defaults_changes_revert_target():
    b = _bundle()
    b.set_defaults(rate=0.75)
    assert b.rate == 0.75
    b.rate = 0.1
    b.revert_all()
    assert b.rate == 0.75


def test_save_replaces_only_own_line(tmp_path):
    path = tmp_path / "vals.txt"
    path.write_text("other\t1 2 3\ndemo\t9 9 9\n", encoding="utf-8")
    b = _bundle()
    b.cnt = 3
    assert b.save_vals(path) == 1
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "other\t1 2 3"
    assert lines.count("demo\t3 0.25 1234") == 1
    assert len(lines) == 2


def test_load_short_and_long_lines(tmp_path):
    path = tmp_path / "vals.txt"
    path.write_text("demo 2\n", encoding="utf-8")
    b = _bundle()
    assert b.load_defs(path) == 1
    assert b.cnt == 2 and b.rate == 0.25

    path.write_text("demo 4 0.5 10 99 98\n", encoding="utf-8")
    assert b.load_defs(path) == 1
    assert (b.cnt, b.rate, b.big) == (4, 0.5, 10.0)


def test_load_missing_or_absent(tmp_path):
    b = _bundle()
    assert b.load_defs(None) == 0
    assert b.load_defs(tmp_path / "nope.txt") == 0
    path = tmp_path / "vals.txt"
    path.write_text("other 1\n", encoding="utf-8")
    assert b.load_defs(path) == 0


def test_bad_value_keeps_earlier_ones(tmp_path):
    path = tmp_path / "vals.txt"
    path.write_text("demo 6 abc 7\n", encoding="utf-8")
    b = _bundle()
    assert b.load_defs(path) == 1
    assert b.cnt == 6
    assert b.rate == 0.25
    assert b.big == 1234.0


def test_load_all_reverts_first(tmp_path):
    path = tmp_path / "vals.txt"
    a, c = _bundle("one"), _bundle("two")
    a.cnt = 11
    assert save_all([a], path) == 1
    a.cnt = 1
    c.cnt = 12
    assert load_all([a, c], path) == 0
    assert a.cnt == 11
    assert c.cnt == 5
