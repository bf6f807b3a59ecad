"""
Catalog Store: the access layer over files, categories, tags and their
associations. Functions here never commit on their own; callers group them
inside `transaction()` so that multi-table writes are atomic.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy import delete, func, literal_column, or_, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import Category, File, Tag, file_tags_table
from .errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 2048


# --- Result Types ---

@dataclass(frozen=True)
class FileRecord:
    id: int
    filename: str
    path: str
    description: str = ""
    tags: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: File, tags: Optional[Dict[str, List[str]]] = None) -> "FileRecord":
        return cls(id=row.id, filename=row.filename, path=row.path,
                   description=row.description or "", tags=tags or {})


@dataclass(frozen=True)
class TagCount:
    value: str
    count: int


# --- Transactions ---

@contextmanager
def transaction(db: Session, context: str = "catalog update") -> Iterator[Session]:
    """
    Commits everything done inside the block, or rolls all of it back.
    Driver errors surface as StorageError naming what was being attempted.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"{context} failed: {e}") from e
    except BaseException:
        db.rollback()
        raise


# --- Categories and Tags ---

def get_or_create_category(db: Session, name: str) -> int:
    """
    Returns the id of the named category, creating it if needed. A concurrent
    insert of the same name is absorbed by the unique constraint and re-read.
    """
    name = name.strip()
    category_id = db.execute(select(Category.id).where(Category.name == name)).scalar()
    if category_id is not None:
        return category_id
    db.execute(insert(Category).values(name=name).on_conflict_do_nothing(index_elements=["name"]))
    return db.execute(select(Category.id).where(Category.name == name)).scalar_one()


def get_or_create_tag(db: Session, category_id: int, value: str) -> int:
    value = value.strip()
    lookup = select(Tag.id).where(Tag.category_id == category_id, Tag.value == value)
    tag_id = db.execute(lookup).scalar()
    if tag_id is not None:
        return tag_id
    db.execute(
        insert(Tag)
        .values(category_id=category_id, value=value)
        .on_conflict_do_nothing(index_elements=["category_id", "value"])
    )
    return db.execute(lookup).scalar_one()


def find_category(db: Session, name: str) -> Optional[int]:
    return db.execute(select(Category.id).where(Category.name == name.strip())).scalar()


def find_tag(db: Session, category_id: int, value: str) -> Optional[int]:
    return db.execute(
        select(Tag.id).where(Tag.category_id == category_id, Tag.value == value.strip())
    ).scalar()


def link_file_tag(db: Session, file_id: int, tag_id: int) -> None:
    """Associates a tag with a file. Linking twice is a no-op."""
    db.execute(
        insert(file_tags_table)
        .values(file_id=file_id, tag_id=tag_id)
        .on_conflict_do_nothing(index_elements=["file_id", "tag_id"])
    )


def unlink_file_tag(db: Session, file_id: int, tag_id: int) -> None:
    db.execute(
        delete(file_tags_table)
        .where(file_tags_table.c.file_id == file_id, file_tags_table.c.tag_id == tag_id)
    )


def unlink_category(db: Session, file_id: int, category_id: int) -> None:
    """Removes every tag in the category from the file."""
    in_category = select(Tag.id).where(Tag.category_id == category_id)
    db.execute(
        delete(file_tags_table)
        .where(file_tags_table.c.file_id == file_id, file_tags_table.c.tag_id.in_(in_category))
    )


def category_names(db: Session) -> List[str]:
    return list(db.execute(select(Category.name).order_by(Category.name)).scalars())


def tag_counts(db: Session) -> Dict[str, List[TagCount]]:
    """Per-category tag usage. Tags with no files are left out."""
    count = func.count(file_tags_table.c.file_id)
    rows = db.execute(
        select(Category.name, Tag.value, count)
        .join(Category, Category.id == Tag.category_id)
        .join(file_tags_table, file_tags_table.c.tag_id == Tag.id)
        .group_by(Tag.id)
        .having(count > 0)
        .order_by(Category.name, Tag.value)
    ).all()
    result: Dict[str, List[TagCount]] = {}
    for category, value, n in rows:
        result.setdefault(category, []).append(TagCount(value=value, count=n))
    return result


def previous_tag_value(db: Session, category: str, exclude_file_id: int) -> str:
    """
    The value most recently assigned in `category` to any other file. Backs
    the `!` shortcut that copies the last used value onto the current file.
    """
    value = db.execute(
        select(Tag.value)
        .join(Category, Category.id == Tag.category_id)
        .join(file_tags_table, file_tags_table.c.tag_id == Tag.id)
        .where(Category.name == category, file_tags_table.c.file_id != exclude_file_id)
        .order_by(literal_column("file_tags.rowid").desc())
        .limit(1)
    ).scalar()
    if value is None:
        raise NotFoundError(f"no previous tag found for category: {category}")
    return value


# --- Files ---

def _tags_by_file(db: Session, file_ids: Iterable[int]) -> Dict[int, Dict[str, List[str]]]:
    ids = list(file_ids)
    result: Dict[int, Dict[str, List[str]]] = {file_id: {} for file_id in ids}
    if not ids:
        return result
    rows = db.execute(
        select(file_tags_table.c.file_id, Category.name, Tag.value)
        .join(Tag, Tag.id == file_tags_table.c.tag_id)
        .join(Category, Category.id == Tag.category_id)
        .where(file_tags_table.c.file_id.in_(ids))
        .order_by(Category.name, Tag.value)
    ).all()
    for file_id, category, value in rows:
        result[file_id].setdefault(category, []).append(value)
    return result


def file_tags(db: Session, file_id: int) -> Dict[str, List[str]]:
    return _tags_by_file(db, [file_id])[file_id]


def get_file(db: Session, file_id: int, with_tags: bool = False) -> Optional[FileRecord]:
    row = db.get(File, file_id)
    if row is None:
        return None
    return FileRecord.from_row(row, file_tags(db, file_id) if with_tags else None)


def require_file(db: Session, file_id: int, with_tags: bool = False) -> FileRecord:
    record = get_file(db, file_id, with_tags=with_tags)
    if record is None:
        raise NotFoundError(f"file {file_id} not found")
    return record


def get_files(db: Session, file_ids: Iterable[int]) -> List[FileRecord]:
    """Existing files among `file_ids`, ascending by id. Unknown ids are skipped."""
    ids = list(file_ids)
    if not ids:
        return []
    rows = db.execute(select(File).where(File.id.in_(ids)).order_by(File.id)).scalars()
    return [FileRecord.from_row(row) for row in rows]


def list_files(db: Session, predicate=None, page: int = 1, per_page: int = 50) -> Tuple[List[FileRecord], int]:
    """
    One page of files matching `predicate` (a SQLAlchemy boolean clause over
    File), newest first, along with the total number of matches.
    """
    page = max(page, 1)
    count_query = select(func.count(File.id))
    page_query = select(File)
    if predicate is not None:
        count_query = count_query.where(predicate)
        page_query = page_query.where(predicate)

    total = db.execute(count_query).scalar_one()
    rows = db.execute(
        page_query.order_by(File.id.desc()).offset((page - 1) * per_page).limit(per_page)
    ).scalars().all()
    tags = _tags_by_file(db, [row.id for row in rows])
    return [FileRecord.from_row(row, tags[row.id]) for row in rows], total


def recent_files(db: Session, limit: int = 20) -> List[FileRecord]:
    rows = db.execute(select(File).order_by(File.id.desc()).limit(limit)).scalars()
    return [FileRecord.from_row(row) for row in rows]


def search_files(db: Session, query: str) -> List[FileRecord]:
    """
    Case-insensitive substring search over filenames, descriptions and tag
    values. `*` matches any run of characters and `?` a single character.
    """
    pattern = "%" + query.strip().lower().replace("*", "%").replace("?", "_") + "%"
    matching_tag = File.tags.any(func.lower(Tag.value).like(pattern))
    rows = db.execute(
        select(File)
        .where(or_(func.lower(File.filename).like(pattern),
                   func.lower(File.description).like(pattern),
                   matching_tag))
        .order_by(File.filename)
    ).scalars().all()
    tags = _tags_by_file(db, [row.id for row in rows])
    return [FileRecord.from_row(row, tags[row.id]) for row in rows]


def filename_exists(db: Session, filename: str, exclude_id: Optional[int] = None) -> bool:
    query = select(File.id).where(File.filename == filename)
    if exclude_id is not None:
        query = query.where(File.id != exclude_id)
    return db.execute(query.limit(1)).scalar() is not None


def all_filenames(db: Session) -> Set[str]:
    return set(db.execute(select(File.filename)).scalars())


def insert_file(db: Session, filename: str, path: str) -> FileRecord:
    row = File(filename=filename, path=path, description="")
    db.add(row)
    db.flush()
    return FileRecord.from_row(row)


def rename_file_record(db: Session, file_id: int, filename: str, path: str) -> None:
    result = db.execute(update(File).where(File.id == file_id).values(filename=filename, path=path))
    if result.rowcount == 0:
        raise NotFoundError(f"file {file_id} not found")


def set_description(db: Session, file_id: int, description: str) -> str:
    description = description[:MAX_DESCRIPTION_LENGTH]
    result = db.execute(update(File).where(File.id == file_id).values(description=description))
    if result.rowcount == 0:
        raise NotFoundError(f"file {file_id} not found")
    return description


def delete_file_record(db: Session, file_id: int) -> None:
    """Drops the file's associations and then its row. Callers wrap this in one transaction."""
    db.execute(delete(file_tags_table).where(file_tags_table.c.file_id == file_id))
    result = db.execute(delete(File).where(File.id == file_id))
    if result.rowcount == 0:
        raise NotFoundError(f"file {file_id} not found")
