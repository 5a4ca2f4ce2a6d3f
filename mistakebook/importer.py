"""
Batch import of items from pipe-separated text or YAML files.

Text format, one item per line:

    original sentence | corrected sentence | optional explanation

YAML format:

    kind: mistake
    category: grammar
    items:
      - original: I have went there.
        corrected: I have gone there.
        explanation: Past participle after "have".
"""

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import bleach
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .db.database import normalize_text
from .exceptions import ItemOperationError
from .models import ItemKind, MistakeCategory, ReviewItem, ensure_utc
from .review_processor import ReviewProcessor

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"


def sanitize_text(value: str) -> str:
    """Strip surrounding whitespace and any HTML markup, keeping plain text."""
    cleaned = bleach.clean(value.strip(), tags=[], attributes={}, strip=True)
    return html.unescape(cleaned).strip()


class ItemDraft(BaseModel):
    """A validated item waiting to be created."""

    model_config = ConfigDict(extra="forbid")

    original_text: str = Field(..., min_length=1, max_length=2048)
    corrected_text: str = Field(..., min_length=1, max_length=2048)
    explanation: Optional[str] = Field(default=None, max_length=4096)
    kind: ItemKind = ItemKind.MISTAKE
    category: MistakeCategory = MistakeCategory.UNCATEGORIZED
    line: Optional[int] = Field(
        default=None, description="1-based source line or entry number."
    )

    @field_validator("original_text", "corrected_text", mode="before")
    @classmethod
    def clean_required(cls, value):
        if isinstance(value, str):
            return sanitize_text(value)
        return value

    @field_validator("explanation", mode="before")
    @classmethod
    def clean_optional(cls, value):
        if isinstance(value, str):
            return sanitize_text(value) or None
        return value


@dataclass(frozen=True)
class ImportLineError:
    line: int
    message: str

    def __str__(self) -> str:
        return f"line {self.line}: {self.message}"


@dataclass
class ImportSummary:
    created: List[ReviewItem] = field(default_factory=list)
    duplicates: List[ItemDraft] = field(default_factory=list)
    errors: List[ImportLineError] = field(default_factory=list)


class ImportFileError(Exception):
    """Custom exception for an import file that cannot be read at all."""

    def __init__(self, file_path: Path, message: str):
        self.file_path = file_path
        self.message = message
        super().__init__(f"{file_path}: {message}")


def _first_validation_message(error: ValidationError) -> str:
    details = error.errors()[0]
    location = ".".join(map(str, details["loc"]))
    return f"{location}: {details['msg']}" if location else details["msg"]


def parse_batch_text(
    text: str,
    kind: ItemKind = ItemKind.MISTAKE,
    category: MistakeCategory = MistakeCategory.UNCATEGORIZED,
) -> Tuple[List[ItemDraft], List[ImportLineError]]:
    """
    Parse pipe-separated lines into drafts.

    Blank lines are skipped. A line needs a non-empty original and corrected
    field; a third field is taken as the explanation and anything after it
    is ignored.

    Returns:
        (drafts, errors), in line order.
    """
    drafts: List[ItemDraft] = []
    errors: List[ImportLineError] = []

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        if not raw_line.strip():
            continue
        parts = [part.strip() for part in raw_line.split(FIELD_SEPARATOR)]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            errors.append(
                ImportLineError(
                    line_number,
                    "expected 'original | corrected | explanation'",
                )
            )
            continue
        try:
            drafts.append(
                ItemDraft(
                    original_text=parts[0],
                    corrected_text=parts[1],
                    explanation=parts[2] if len(parts) > 2 else None,
                    kind=kind,
                    category=category,
                    line=line_number,
                )
            )
        except ValidationError as e:
            errors.append(ImportLineError(line_number, _first_validation_message(e)))

    for error in errors:
        logger.warning(f"Skipped import {error}")
    return drafts, errors


# --- YAML files ---


class _RawYAMLItemEntry(BaseModel):
    original: str = Field(..., min_length=1)
    corrected: str = Field(..., min_length=1)
    explanation: Optional[str] = None
    category: Optional[MistakeCategory] = None

    model_config = ConfigDict(extra="forbid")


class _RawYAMLItemsFile(BaseModel):
    kind: ItemKind = ItemKind.MISTAKE
    category: MistakeCategory = MistakeCategory.UNCATEGORIZED
    items: List[_RawYAMLItemEntry] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


def load_items_yaml(file_path: Path) -> List[ItemDraft]:
    """
    Read and validate a YAML items file.

    Raises:
        ImportFileError: If the file is missing or unreadable, is not valid
            YAML, or does not match the expected structure.
    """
    try:
        raw_content = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ImportFileError(file_path, "File not found.") from None
    except OSError as e:
        raise ImportFileError(file_path, f"Could not read file: {e}") from e
    except yaml.YAMLError as e:
        raise ImportFileError(file_path, f"Invalid YAML syntax: {e}") from e

    if not isinstance(raw_content, dict):
        raise ImportFileError(file_path, "Top level of YAML must be a mapping.")

    try:
        parsed = _RawYAMLItemsFile.model_validate(raw_content)
        return [
            ItemDraft(
                original_text=entry.original,
                corrected_text=entry.corrected,
                explanation=entry.explanation,
                kind=parsed.kind,
                category=entry.category or parsed.category,
                line=index,
            )
            for index, entry in enumerate(parsed.items, start=1)
        ]
    except ValidationError as e:
        raise ImportFileError(
            file_path, f"Validation error in {_first_validation_message(e)}"
        ) from e


# --- Creation ---


def import_items(
    processor: ReviewProcessor,
    drafts: List[ItemDraft],
    skip_duplicates: bool = True,
    now: Optional[datetime] = None,
) -> ImportSummary:
    """
    Create items from drafts.

    Duplicates are detected on the normalized original text, both against
    the database and within the batch. All items share one forecast
    snapshot, incremented after each creation so that later items in the
    batch see the load added by earlier ones.
    """
    summary = ImportSummary()
    if not drafts:
        return summary

    ts = ensure_utc(now or datetime.now(timezone.utc))
    seen = processor.db_manager.get_all_original_texts() if skip_duplicates else {}
    forecast: Dict = dict(processor.fetch_forecast(ts))

    for draft in drafts:
        key = normalize_text(draft.original_text)
        if skip_duplicates and key in seen:
            logger.debug(f"Skipping duplicate: {draft.original_text!r}")
            summary.duplicates.append(draft)
            continue

        try:
            item = processor.create_item(
                draft.original_text,
                draft.corrected_text,
                explanation=draft.explanation,
                kind=draft.kind,
                category=draft.category,
                created_at=ts,
                load_forecast=forecast,
            )
        except ItemOperationError as e:
            summary.errors.append(ImportLineError(draft.line or 0, str(e)))
            logger.warning(f"Could not create item from line {draft.line}: {e}")
            continue

        day = item.next_review_at.date()
        forecast[day] = forecast.get(day, 0) + 1
        seen[key] = item.id
        summary.created.append(item)

    logger.info(
        f"Import finished: {len(summary.created)} created, "
        f"{len(summary.duplicates)} duplicates, {len(summary.errors)} errors."
    )
    return summary
