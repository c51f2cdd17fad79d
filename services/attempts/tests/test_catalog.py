"""Tests for the YAML-backed catalog."""

import pytest
from pydantic import ValidationError

from services.attempts.catalog import load_catalog

CATALOG_YAML = """
tests:
  - test_id: geo-101
    title: Capitals
    passing_percentage: 50
    time_limit_seconds: 900
    sections:
      - name: europe
        questions:
          - {question_id: capital-fr, points: 5}
          - {question_id: is-paris-capital, points: 5}
questions:
  - {question_id: capital-fr, type: short-answer, full_points: 5, accepted_answers: [Paris]}
  - {question_id: is-paris-capital, type: true-false, full_points: 5, correct_boolean: true}
"""


def test_load_catalog_from_yaml(tmp_path) -> None:
    path = tmp_path / "catalog.yaml"
    path.write_text(CATALOG_YAML, encoding="utf-8")
    catalog = load_catalog(path)
    test = catalog.get_test("geo-101")
    assert test is not None
    assert [q.question_id for q in test.questions()] == ["capital-fr", "is-paris-capital"]
    assert catalog.get_passing_percentage("geo-101") == 50
    assert catalog.get_sections("geo-101")[0].name == "europe"
    assert catalog.get_answer_key("capital-fr").accepted_answers == ["Paris"]
    assert catalog.get_answer_key("missing") is None


def test_load_catalog_with_bom(tmp_path) -> None:
    path = tmp_path / "catalog.yaml"
    path.write_bytes(b"\xef\xbb\xbf" + CATALOG_YAML.encode("utf-8"))
    assert load_catalog(path).get_test("geo-101") is not None


def test_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_catalog(tmp_path / "nope.yaml")


def test_invalid_question_type(tmp_path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("questions:\n  - {question_id: q, type: matching}\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_catalog(path)


def test_unknown_test_lookups_raise_key_error(catalog) -> None:
    assert catalog.get_test("nope") is None
    with pytest.raises(KeyError):
        catalog.get_sections("nope")
    with pytest.raises(KeyError):
        catalog.get_passing_percentage("nope")


def test_question_listed_in_two_sections_is_rejected(tmp_path) -> None:
    path = tmp_path / "dup.yaml"
    path.write_text(
        "tests:\n"
        "  - test_id: dup\n"
        "    sections:\n"
        "      - {name: one, questions: [{question_id: q1, points: 1}]}\n"
        "      - {name: two, questions: [{question_id: q1, points: 3}]}\n",
        encoding="utf-8",
    )
    with pytest.raises(ValidationError, match="more than once"):
        load_catalog(path)
