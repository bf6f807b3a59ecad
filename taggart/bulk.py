"""
Bulk tag editing: choosing files by id range or by tag query, and applying
one tag change to all of them in a single transaction.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import catalog
from .database import File
from .errors import NoMatchesError, NotFoundError, ValidationError
from .filters import AllOf, AnyOf, HasTag, compile_predicate

logger = logging.getLogger(__name__)

OR_SEPARATOR = re.compile(r"\s+OR\s+", re.IGNORECASE)
DIGITS = re.compile(r"^\d+$")
OPERATIONS = {"add", "remove"}
SELECTION_MODES = {"range", "tags"}
MAX_RANGE_SPAN = 100_000


# --- Range Expressions ---

def _parse_id(text: str, token: str) -> int:
    text = text.strip()
    if not DIGITS.match(text):
        raise ValidationError(f"invalid file ID '{text}' in '{token}'")
    return int(text)


def parse_file_id_range(range_str: str) -> List[int]:
    """
    Expands "1-3,7,9-10" into [1, 2, 3, 7, 9, 10]. Duplicates collapse and the
    result is ascending. Any bad token rejects the whole expression.
    """
    ids = set()
    for token in range_str.split(","):
        token = token.strip()
        if not token:
            continue
        if "-" in token:
            bounds = token.split("-")
            if len(bounds) != 2:
                raise ValidationError(f"invalid range format: '{token}'")
            start, end = _parse_id(bounds[0], token), _parse_id(bounds[1], token)
            if start > end:
                raise ValidationError(f"invalid range '{token}': start must be <= end")
            if end - start >= MAX_RANGE_SPAN:
                raise ValidationError(f"range '{token}' is too wide: at most {MAX_RANGE_SPAN} IDs per range")
            ids.update(range(start, end + 1))
        else:
            ids.add(_parse_id(token, token))
    if not ids:
        raise ValidationError(f"file range '{range_str}' does not contain any IDs")
    return sorted(ids)


# --- Tag Queries ---

@dataclass(frozen=True)
class TagPair:
    category: str
    value: str


def _parse_pair(text: str) -> TagPair:
    category, sep, value = text.partition(":")
    category, value = category.strip(), value.strip()
    if not sep or not category or not value:
        raise ValidationError(f"invalid tag format '{text}', expected 'category:value'")
    return TagPair(category, value)


def parse_tag_query(query: str) -> Tuple[str, List[TagPair]]:
    """
    Returns ("or", pairs) for `a:b OR c:d` and ("and", pairs) for `a:b,c:d`.
    The OR form is checked first, so commas inside an OR query are part of a
    value rather than an AND.
    """
    query = query.strip()
    if not query:
        raise ValidationError("tag query cannot be empty")
    if OR_SEPARATOR.search(query):
        mode, parts = "or", OR_SEPARATOR.split(query)
    else:
        mode, parts = "and", query.split(",")
    pairs = [_parse_pair(part) for part in parts if part.strip()]
    if not pairs:
        raise ValidationError(f"no valid tags found in query '{query}'")
    return mode, pairs


def tag_query_predicate(query: str):
    """Literal tag identity only; alias groups are not consulted here."""
    mode, pairs = parse_tag_query(query)
    clauses = tuple(HasTag(p.category, (p.value,)) for p in pairs)
    return AnyOf(clauses) if mode == "or" else AllOf(clauses)


def file_ids_from_tag_query(db: Session, query: str) -> List[int]:
    """Ids of files matching the query, ascending. Raises NoMatchesError when empty."""
    predicate = compile_predicate(tag_query_predicate(query))
    ids = list(db.execute(select(File.id).where(predicate).order_by(File.id)).scalars())
    if not ids:
        raise NoMatchesError(f"no files match the tag query '{query}'")
    return ids


# --- Validation and Mutation ---

def validate_file_ids(db: Session, file_ids: Sequence[int]) -> List[catalog.FileRecord]:
    """Resolves every id to a file, or reports all missing ids together."""
    if not file_ids:
        raise ValidationError("no file IDs provided")
    files = catalog.get_files(db, file_ids)
    found = {f.id for f in files}
    missing = [file_id for file_id in file_ids if file_id not in found]
    if missing:
        raise NotFoundError(f"file IDs not found: {missing}", missing=missing)
    return files


def apply_bulk_tag_operation(db: Session, file_ids: Sequence[int], category: str, value: str, operation: str) -> None:
    """
    Adds or removes (category, value) on every file, all or nothing. Removing
    with an empty value clears the whole category from each file.
    """
    category, value = category.strip(), value.strip()
    if not category:
        raise ValidationError("category cannot be empty")
    if operation not in OPERATIONS:
        raise ValidationError(f"invalid operation: '{operation}' (must be 'add' or 'remove')")
    if operation == "add" and not value:
        raise ValidationError("value cannot be empty when adding tags")

    with catalog.transaction(db, f"bulk {operation} of {category}:{value}"):
        if operation == "add":
            tag_id = catalog.get_or_create_tag(db, catalog.get_or_create_category(db, category), value)
            for file_id in file_ids:
                catalog.link_file_tag(db, file_id, tag_id)
            return

        category_id = catalog.find_category(db, category)
        if category_id is None:
            raise NotFoundError(f"cannot remove non-existent category: {category}")
        if not value:
            for file_id in file_ids:
                catalog.unlink_category(db, file_id, category_id)
            return
        tag_id = catalog.find_tag(db, category_id, value)
        if tag_id is None:
            raise NotFoundError(f"cannot remove non-existent tag: {category}={value}")
        for file_id in file_ids:
            catalog.unlink_file_tag(db, file_id, tag_id)


# --- Request Orchestration ---

class BulkTagRequest(BaseModel):
    selection_mode: str = "range"
    file_range: str = ""
    tag_query: str = ""
    category: str
    value: str = ""
    operation: str = "add"


@dataclass(frozen=True)
class BulkTagResult:
    files: List[catalog.FileRecord]
    message: str


def select_file_ids(db: Session, request: BulkTagRequest) -> List[int]:
    mode = request.selection_mode or "range"
    if mode not in SELECTION_MODES:
        raise ValidationError(f"invalid selection mode: '{mode}'")
    if mode == "range":
        if not request.file_range.strip():
            raise ValidationError("file range cannot be empty")
        return parse_file_id_range(request.file_range)
    if not request.tag_query.strip():
        raise ValidationError("tag query cannot be empty")
    return file_ids_from_tag_query(db, request.tag_query)


def _describe(request: BulkTagRequest, count: int) -> str:
    if request.selection_mode == "tags":
        selection = f"tag query '{request.tag_query.strip()}'"
    else:
        selection = f"file range '{request.file_range.strip()}'"
    category, value = request.category.strip(), request.value.strip()
    if request.operation == "add":
        return f"Tag '{category}: {value}' added to {count} files matching {selection}"
    if value:
        return f"Tag '{category}: {value}' removed from {count} files matching {selection}"
    return f"All '{category}' category tags removed from {count} files matching {selection}"


def _summarize_names(names: List[str], limit: int = 5) -> str:
    if len(names) <= limit:
        return ", ".join(names)
    return f"{', '.join(names[:limit])} and {len(names) - limit} more"


def run_bulk_tag(db: Session, request: BulkTagRequest) -> BulkTagResult:
    """Select, validate, then mutate. Nothing is written unless every step succeeds."""
    if not request.category.strip():
        raise ValidationError("category cannot be empty")
    if request.operation == "add" and not request.value.strip():
        raise ValidationError("value cannot be empty when adding tags")

    file_ids = select_file_ids(db, request)
    files = validate_file_ids(db, file_ids)
    apply_bulk_tag_operation(db, file_ids, request.category, request.value, request.operation)
    logger.info("Bulk %s of %s:%s applied to %d files", request.operation,
                request.category, request.value, len(files))

    message = _describe(request, len(files))
    return BulkTagResult(files=files, message=f"{message}: {_summarize_names([f.filename for f in files])}")
