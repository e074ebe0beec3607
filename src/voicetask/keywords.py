"""Loading of the keyword and title tables used by the heuristic extractor."""

from __future__ import annotations

import logging
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from voicetask.models import Category, Urgency

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "fr"


class WeightedPattern(BaseModel):
    pattern: str = Field(min_length=1)
    weight: float = Field(default=1.0, gt=0)


class DateTerm(BaseModel):
    """A relative date expression and how to resolve it."""

    pattern: str = Field(min_length=1)
    days: int | None = None
    weekday: int | None = Field(default=None, ge=0, le=6)
    inclusive: bool = Field(default=False, description="Weekday may resolve to today")
    months: int | None = None


class LanguageTable(BaseModel):
    categories: dict[Category, list[WeightedPattern]] = Field(default_factory=dict)
    urgency: dict[Urgency, list[WeightedPattern]] = Field(default_factory=dict)
    dates: list[DateTerm] = Field(default_factory=list)


class KeywordTable(BaseModel):
    languages: dict[str, LanguageTable] = Field(default_factory=dict)

    def for_language(self, language: str, fallback: str = DEFAULT_LANGUAGE) -> LanguageTable:
        """Table for a language, falling back when the language has none."""
        if language in self.languages:
            return self.languages[language]
        if fallback in self.languages:
            return self.languages[fallback]
        return LanguageTable()


class TitleTemplates(BaseModel):
    with_child: list[str] = Field(default_factory=list)
    without_child: list[str] = Field(default_factory=lambda: ["{action}"])
    fallback: str = "Task"


def _read_yaml(text: str) -> Any:
    return yaml.safe_load(text)


@lru_cache(maxsize=None)
def _bundled(name: str) -> Any:
    return _read_yaml(resources.files("voicetask").joinpath("data", name).read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def default_keyword_table() -> KeywordTable:
    return KeywordTable.model_validate({"languages": _bundled("keywords.yaml")})


def load_keyword_table(path: str = "") -> KeywordTable:
    """
    Load a keyword table from a YAML file.

    Args:
        path: Path to a custom table. Empty means the bundled table.

    Returns:
        The parsed table. A missing or malformed custom file falls back to the
        bundled table with a warning.
    """
    if not path:
        return default_keyword_table()

    filepath = Path(path).expanduser()
    if not filepath.exists():
        logger.warning(f"Keyword table not found: {path}, using bundled table")
        return default_keyword_table()

    try:
        data = _read_yaml(filepath.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("expected a mapping of language codes")
        return KeywordTable.model_validate({"languages": data})
    except (yaml.YAMLError, ValidationError, ValueError) as e:
        logger.warning(f"Error loading keyword table from {path}: {e}")
        return default_keyword_table()


@lru_cache(maxsize=1)
def _title_data() -> dict[str, dict[str, TitleTemplates]]:
    raw = _bundled("titles.yaml") or {}
    return {
        language: {category: TitleTemplates.model_validate(entry) for category, entry in categories.items()}
        for language, categories in raw.items()
    }


def title_templates(language: str, category: Category) -> TitleTemplates:
    data = _title_data()
    by_category = data.get(language) or data.get(DEFAULT_LANGUAGE, {})
    return by_category.get(category.value) or by_category.get(Category.OTHER.value) or TitleTemplates()
