import pytest
from sqlalchemy import func, select

from taggart import catalog
from taggart.database import Category, Tag, file_tags_table
from taggart.errors import NotFoundError, StorageError


def test_get_or_create_is_idempotent(db):
    with catalog.transaction(db):
        first = catalog.get_or_create_category(db, "colour")
        second = catalog.get_or_create_category(db, " colour ")
        tag_a = catalog.get_or_create_tag(db, first, "red")
        tag_b = catalog.get_or_create_tag(db, first, "red")

    assert first == second
    assert tag_a == tag_b
    assert db.execute(select(func.count(Category.id))).scalar_one() == 1
    assert db.execute(select(func.count(Tag.id))).scalar_one() == 1


def test_same_value_in_two_categories_is_two_tags(db):
    with catalog.transaction(db):
        colour = catalog.get_or_create_category(db, "colour")
        mood = catalog.get_or_create_category(db, "mood")
        assert catalog.get_or_create_tag(db, colour, "blue") != catalog.get_or_create_tag(db, mood, "blue")


def test_link_twice_keeps_one_association(db, add_file):
    record = add_file("a.jpg", "colour:red")
    tag_id = catalog.find_tag(db, catalog.find_category(db, "colour"), "red")
    with catalog.transaction(db):
        catalog.link_file_tag(db, record.id, tag_id)

    rows = db.execute(select(func.count()).select_from(file_tags_table)).scalar_one()
    assert rows == 1


def test_multi_valued_tagging_and_unlink_category(db, add_file):
    record = add_file("a.jpg", "colour:red", "colour:blue", "size:large")
    assert catalog.file_tags(db, record.id) == {"colour": ["blue", "red"], "size": ["large"]}

    with catalog.transaction(db):
        catalog.unlink_category(db, record.id, catalog.find_category(db, "colour"))
    assert catalog.file_tags(db, record.id) == {"size": ["large"]}


def test_unlink_single_tag(db, add_file):
    record = add_file("a.jpg", "colour:red", "colour:blue")
    colour = catalog.find_category(db, "colour")
    with catalog.transaction(db):
        catalog.unlink_file_tag(db, record.id, catalog.find_tag(db, colour, "red"))
    assert catalog.file_tags(db, record.id) == {"colour": ["blue"]}


def test_list_files_pages_newest_first(db, add_file):
    ids = [add_file(f"{i}.jpg").id for i in range(5)]

    page_one, total = catalog.list_files(db, None, page=1, per_page=2)
    page_three, _ = catalog.list_files(db, None, page=3, per_page=2)

    assert total == 5
    assert [f.id for f in page_one] == [ids[4], ids[3]]
    assert [f.id for f in page_three] == [ids[0]]


def test_tag_counts_skip_unused_tags(db, add_file):
    add_file("a.jpg", "colour:red", "size:large")
    add_file("b.jpg", "colour:red")
    with catalog.transaction(db):
        catalog.get_or_create_tag(db, catalog.get_or_create_category(db, "colour"), "unused")

    counts = catalog.tag_counts(db)

    assert counts == {
        "colour": [catalog.TagCount("red", 2)],
        "size": [catalog.TagCount("large", 1)],
    }


def test_delete_file_record_removes_associations(db, add_file):
    record = add_file("a.jpg", "colour:red")
    with catalog.transaction(db):
        catalog.delete_file_record(db, record.id)

    assert catalog.get_file(db, record.id) is None
    assert db.execute(select(func.count()).select_from(file_tags_table)).scalar_one() == 0


def test_delete_of_missing_file_is_not_found(db):
    with pytest.raises(NotFoundError):
        with catalog.transaction(db):
            catalog.delete_file_record(db, 42)


def test_transaction_rolls_back_every_step(db, add_file):
    record = add_file("a.jpg")
    with pytest.raises(StorageError, match="linking"):
        with catalog.transaction(db, "linking"):
            tag_id = catalog.get_or_create_tag(db, catalog.get_or_create_category(db, "colour"), "red")
            catalog.link_file_tag(db, record.id, tag_id)
            # Foreign keys are enforced, so this fails and takes the link with it.
            catalog.link_file_tag(db, 999, tag_id)

    assert catalog.find_category(db, "colour") is None
    assert catalog.file_tags(db, record.id) == {}


def test_duplicate_filename_row_is_rejected(db, add_file):
    record = add_file("a.jpg")
    with pytest.raises(StorageError):
        with catalog.transaction(db, "recording 'a.jpg'"):
            catalog.insert_file(db, "a.jpg", record.path)

    assert catalog.all_filenames(db) == {"a.jpg"}


def test_description_is_truncated(db, add_file):
    record = add_file("a.jpg")
    with catalog.transaction(db):
        stored = catalog.set_description(db, record.id, "x" * 5000)
    assert len(stored) == catalog.MAX_DESCRIPTION_LENGTH
    assert catalog.get_file(db, record.id).description == stored


def test_previous_tag_value_uses_latest_assignment_on_other_files(db, add_file):
    add_file("a.jpg", "artist:alice")
    add_file("b.jpg", "artist:bob")
    current = add_file("c.jpg", "artist:carol")

    assert catalog.previous_tag_value(db, "artist", current.id) == "bob"
    with pytest.raises(NotFoundError):
        catalog.previous_tag_value(db, "series", current.id)


def test_search_matches_filename_description_and_tags(db, add_file):
    add_file("holiday.jpg")
    tagged = add_file("img001.jpg", "place:Lisbon")
    described = add_file("img002.jpg")
    with catalog.transaction(db):
        catalog.set_description(db, described.id, "Sunset over the harbour")

    assert [f.filename for f in catalog.search_files(db, "HOLI*")] == ["holiday.jpg"]
    assert [f.id for f in catalog.search_files(db, "lisbon")] == [tagged.id]
    assert [f.id for f in catalog.search_files(db, "harb?ur")] == [described.id]


def test_filename_exists_can_exclude_a_file(db, add_file):
    record = add_file("a.jpg")
    assert catalog.filename_exists(db, "a.jpg")
    assert not catalog.filename_exists(db, "a.jpg", exclude_id=record.id)
