# services/attempts/catalog.py
"""Read-only collaborators consumed by the engine.

- `QuestionCatalog`: answer keys by question id.
- `TestDefinitions`: section structure, weights and passing threshold per test.

`InMemoryCatalog` implements both and can be filled from a YAML file:

    tests:
      - test_id: geo-101
        passing_percentage: 60
        sections:
          - name: capitals
            questions:
              - {question_id: q1, points: 10}
    questions:
      - {question_id: q1, type: short-answer, full_points: 10, accepted_answers: [Paris]}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import yaml

from packages.schemas.attempt import AnswerKey, Section, TestDefinition

log = logging.getLogger(__name__)


class QuestionCatalog(Protocol):
    def get_answer_key(self, question_id: str) -> Optional[AnswerKey]:
        """Return the key, or None if the catalog does not know the question."""
        ...


class TestDefinitions(Protocol):
    def get_test(self, test_id: str) -> Optional[TestDefinition]:
        ...

    def get_sections(self, test_id: str) -> List[Section]:
        ...

    def get_passing_percentage(self, test_id: str) -> float:
        ...


class InMemoryCatalog:
    """Dict-backed question catalog and test definitions."""

    def __init__(self, tests: Iterable[TestDefinition] = (), keys: Iterable[AnswerKey] = ()) -> None:
        self._tests: Dict[str, TestDefinition] = {}
        self._keys: Dict[str, AnswerKey] = {}
        for t in tests:
            self.add_test(t)
        for k in keys:
            self.add_key(k)

    def add_test(self, test: TestDefinition) -> None:
        self._tests[test.test_id] = test

    def add_key(self, key: AnswerKey) -> None:
        self._keys[key.question_id] = key

    def get_answer_key(self, question_id: str) -> Optional[AnswerKey]:
        return self._keys.get(question_id)

    def get_test(self, test_id: str) -> Optional[TestDefinition]:
        return self._tests.get(test_id)

    def get_sections(self, test_id: str) -> List[Section]:
        test = self._tests.get(test_id)
        if test is None:
            raise KeyError(test_id)
        return list(test.sections)

    def get_passing_percentage(self, test_id: str) -> float:
        test = self._tests.get(test_id)
        if test is None:
            raise KeyError(test_id)
        return test.passing_percentage

    def __len__(self) -> int:
        return len(self._tests)


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML document as a dict, tolerating a UTF-8 BOM."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except UnicodeDecodeError:
        with open(path, "r", encoding="utf-8-sig") as f:
            text = f.read()
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Catalog root must be a mapping: {path}")
    return data


def load_catalog(path: str | Path) -> InMemoryCatalog:
    """Load tests and answer keys from a YAML file.

    Raises:
        FileNotFoundError: if the file is missing.
        pydantic.ValidationError: if an entry does not match the schema.
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Catalog file not found: {p}")
    data = _read_yaml(p)
    catalog = InMemoryCatalog(
        tests=[TestDefinition.model_validate(t) for t in data.get("tests") or []],
        keys=[AnswerKey.model_validate(q) for q in data.get("questions") or []],
    )
    log.info("Loaded catalog from %s (%d tests)", p, len(catalog))
    return catalog
