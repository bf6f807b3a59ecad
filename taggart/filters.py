"""
Tag filtering.

Requests describe filters as (category, value) pairs. They are turned into a
small predicate tree first (alias expansion and the `unassigned` keyword are
resolved here, without a database), and the tree is compiled to a SQLAlchemy
clause over File in `compile_predicate`.
"""
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

from sqlalchemy import and_, false, not_, or_, true
from sqlalchemy.orm import Session

from . import catalog
from .config import Settings, TagAliasGroup
from .database import Category, File, Tag
from .errors import ValidationError

UNASSIGNED = "unassigned"
PAIR_SEPARATOR = "/and/tag/"


# --- Predicate Tree ---

@dataclass(frozen=True)
class HasTag:
    """The file carries some tag in `category` whose value is one of `values`."""
    category: str
    values: Tuple[str, ...]


@dataclass(frozen=True)
class LacksCategory:
    """The file carries no tag at all in `category`."""
    category: str


@dataclass(frozen=True)
class Untagged:
    """The file carries no tags."""


@dataclass(frozen=True)
class AllOf:
    clauses: Tuple["Predicate", ...]


@dataclass(frozen=True)
class AnyOf:
    clauses: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Not:
    clause: "Predicate"


Predicate = Union[HasTag, LacksCategory, Untagged, AllOf, AnyOf, Not]


def compile_predicate(node: Predicate):
    """Compiles a predicate tree into a boolean clause usable in `select(File).where(...)`."""
    if isinstance(node, HasTag):
        return File.tags.any(and_(
            Tag.category.has(Category.name == node.category),
            Tag.value.in_(node.values),
        ))
    if isinstance(node, LacksCategory):
        return not_(File.tags.any(Tag.category.has(Category.name == node.category)))
    if isinstance(node, Untagged):
        return not_(File.tags.any())
    if isinstance(node, AllOf):
        if not node.clauses:
            return true()
        return and_(*(compile_predicate(c) for c in node.clauses))
    if isinstance(node, AnyOf):
        if not node.clauses:
            return false()
        return or_(*(compile_predicate(c) for c in node.clauses))
    if isinstance(node, Not):
        return not_(compile_predicate(node.clause))
    raise TypeError(f"unsupported predicate node: {node!r}")


# --- Alias Expansion ---

def expand_aliases(category: str, value: str, groups: Sequence[TagAliasGroup]) -> List[str]:
    """
    The values a filter on (category, value) should match. If `value` belongs
    (case-insensitively) to an alias group of the same category, the whole
    group is returned with the requested value first; otherwise just `value`.
    """
    values = [value]
    for group in groups:
        if group.category != category:
            continue
        if any(alias.lower() == value.lower() for alias in group.aliases):
            values.extend(alias for alias in group.aliases if alias.lower() != value.lower())
            break
    return values


def build_filter(pairs: Sequence[Tuple[str, str]], groups: Sequence[TagAliasGroup]) -> AllOf:
    """Every pair must hold. `unassigned` means the file has nothing in that category."""
    clauses: List[Predicate] = []
    for category, value in pairs:
        if value == UNASSIGNED:
            clauses.append(LacksCategory(category))
        else:
            clauses.append(HasTag(category, tuple(expand_aliases(category, value, groups))))
    return AllOf(tuple(clauses))


# --- Path Parsing and Presentation ---

@dataclass(frozen=True)
class Breadcrumb:
    name: str
    url: str


@dataclass(frozen=True)
class Pagination:
    current_page: int
    total_pages: int
    has_prev: bool
    has_next: bool
    prev_page: int
    next_page: int
    per_page: int


@dataclass(frozen=True)
class FilteredFileList:
    files: List[catalog.FileRecord]
    total_count: int
    breadcrumbs: List[Breadcrumb]
    pagination: Pagination
    title: str = ""


@dataclass(frozen=True)
class BrowseListing:
    tagged: List[catalog.FileRecord]
    untagged: List[catalog.FileRecord]
    pagination: Pagination


@dataclass(frozen=True)
class FileList:
    files: List[catalog.FileRecord]
    total_count: int
    pagination: Pagination


def parse_filter_path(path: str) -> List[Tuple[str, str]]:
    """
    Splits `colour/red/and/tag/size/large` into [("colour", "red"), ("size", "large")].
    """
    path = path.strip("/")
    if path.startswith("tag/"):
        path = path[len("tag/"):]
    if not path:
        raise ValidationError("invalid tag filter path: no filters given")
    pairs = []
    for segment in path.split(PAIR_SEPARATOR):
        parts = segment.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValidationError(f"invalid tag filter path segment: '{segment}'")
        pairs.append((parts[0], parts[1]))
    return pairs


def build_breadcrumbs(pairs: Sequence[Tuple[str, str]]) -> List[Breadcrumb]:
    breadcrumbs = [Breadcrumb("Home", "/"), Breadcrumb("Tags", "/tags")]
    seen_categories = set()
    current_path = "/tag"
    for i, (category, value) in enumerate(pairs):
        current_path += f"/{category}/{value}" if i == 0 else f"{PAIR_SEPARATOR}{category}/{value}"
        if category not in seen_categories:
            seen_categories.add(category)
            breadcrumbs.append(Breadcrumb(category.title(), f"/tags#tag-{category}"))
        breadcrumbs.append(Breadcrumb(value.title(), current_path))
    return breadcrumbs


def calculate_pagination(page: int, total: int, per_page: int) -> Pagination:
    total_pages = max((total + per_page - 1) // per_page, 1)
    return Pagination(
        current_page=page,
        total_pages=total_pages,
        has_prev=page > 1,
        has_next=page < total_pages,
        prev_page=page - 1,
        next_page=page + 1,
        per_page=per_page,
    )


# --- Queries ---

def filter_files(db: Session, settings: Settings, pairs: Sequence[Tuple[str, str]], page: int = 1) -> FilteredFileList:
    """Files satisfying every (category, value) pair, newest first, one page at a time."""
    page = max(page, 1)
    per_page = settings.items_per_page
    predicate = build_filter(pairs, settings.tag_aliases)
    files, total = catalog.list_files(db, compile_predicate(predicate), page, per_page)
    title = "Tagged: " + ", ".join(f"{c}: {v}" for c, v in pairs)
    return FilteredFileList(
        files=files,
        total_count=total,
        breadcrumbs=build_breadcrumbs(pairs),
        pagination=calculate_pagination(page, total, per_page),
        title=title,
    )


def browse(db: Session, settings: Settings, page: int = 1) -> BrowseListing:
    """The front page: tagged and untagged files side by side, paged together."""
    page = max(page, 1)
    per_page = settings.items_per_page
    tagged, tagged_total = catalog.list_files(db, compile_predicate(Not(Untagged())), page, per_page)
    untagged, untagged_total = catalog.list_files(db, compile_predicate(Untagged()), page, per_page)
    return BrowseListing(
        tagged=tagged,
        untagged=untagged,
        pagination=calculate_pagination(page, max(tagged_total, untagged_total), per_page),
    )


def list_untagged(db: Session, settings: Settings, page: int = 1) -> FileList:
    page = max(page, 1)
    files, total = catalog.list_files(db, compile_predicate(Untagged()), page, settings.items_per_page)
    return FileList(files=files, total_count=total,
                    pagination=calculate_pagination(page, total, settings.items_per_page))
