import pytest

from taggart import filters
from taggart.config import TagAliasGroup
from taggart.errors import ValidationError
from taggart.filters import AllOf, HasTag, LacksCategory

ALIASES = (
    TagAliasGroup(category="colour", aliases=("red", "crimson", "scarlet")),
    TagAliasGroup(category="mood", aliases=("calm", "serene")),
)


# --- Predicate building, no database ---

def test_alias_expansion_returns_whole_group_requested_value_first():
    assert filters.expand_aliases("colour", "crimson", ALIASES) == ["crimson", "red", "scarlet"]


def test_alias_expansion_is_case_insensitive():
    assert filters.expand_aliases("colour", "RED", ALIASES) == ["RED", "crimson", "scarlet"]


def test_value_outside_any_group_stays_alone():
    assert filters.expand_aliases("colour", "blue", ALIASES) == ["blue"]


def test_alias_groups_do_not_cross_categories():
    assert filters.expand_aliases("mood", "red", ALIASES) == ["red"]


def test_build_filter_combines_pairs_with_and():
    predicate = filters.build_filter([("colour", "crimson"), ("rating", "unassigned")], ALIASES)
    assert predicate == AllOf((
        HasTag("colour", ("crimson", "red", "scarlet")),
        LacksCategory("rating"),
    ))


def test_parse_filter_path():
    assert filters.parse_filter_path("colour/red/and/tag/size/large") == [("colour", "red"), ("size", "large")]
    assert filters.parse_filter_path("/tag/colour/red") == [("colour", "red")]


@pytest.mark.parametrize("path", ["", "colour", "colour/red/extra", "colour/red/and/tag/size"])
def test_parse_filter_path_rejects_malformed(path):
    with pytest.raises(ValidationError):
        filters.parse_filter_path(path)


def test_breadcrumbs_accumulate_filter_path():
    crumbs = filters.build_breadcrumbs([("colour", "red"), ("colour", "blue"), ("size", "large")])
    assert [(c.name, c.url) for c in crumbs] == [
        ("Home", "/"),
        ("Tags", "/tags"),
        ("Colour", "/tags#tag-colour"),
        ("Red", "/tag/colour/red"),
        ("Blue", "/tag/colour/red/and/tag/colour/blue"),
        ("Size", "/tags#tag-size"),
        ("Large", "/tag/colour/red/and/tag/colour/blue/and/tag/size/large"),
    ]


def test_pagination_has_at_least_one_page():
    empty = filters.calculate_pagination(1, 0, 10)
    assert empty.total_pages == 1
    assert not empty.has_next and not empty.has_prev

    middle = filters.calculate_pagination(2, 25, 10)
    assert (middle.total_pages, middle.has_prev, middle.has_next) == (3, True, True)


# --- Against the catalog ---

def _ids(result):
    return sorted(f.id for f in result.files)


def test_alias_filter_matches_either_spelling(db, settings, add_file):
    red = add_file("red.jpg", "colour:red")
    crimson = add_file("crimson.jpg", "colour:crimson")
    add_file("blue.jpg", "colour:blue")

    assert _ids(filters.filter_files(db, settings, [("colour", "crimson")])) == [red.id, crimson.id]
    assert _ids(filters.filter_files(db, settings, [("colour", "red")])) == [red.id, crimson.id]


def test_unaliased_filter_matches_exact_value_only(db, settings, add_file):
    add_file("red.jpg", "colour:red")
    blue = add_file("blue.jpg", "colour:blue")

    assert _ids(filters.filter_files(db, settings, [("colour", "blue")])) == [blue.id]


def test_unassigned_returns_files_without_that_category(db, settings, add_file):
    add_file("rated.jpg", "rating:5")
    unrated = add_file("unrated.jpg", "colour:red")
    bare = add_file("bare.jpg")

    result = filters.filter_files(db, settings, [("rating", "unassigned")])
    assert _ids(result) == [unrated.id, bare.id]
    assert result.total_count == 2


def test_filters_are_anded(db, settings, add_file):
    both = add_file("both.jpg", "colour:red", "size:large")
    add_file("colour-only.jpg", "colour:red")

    result = filters.filter_files(db, settings, [("colour", "red"), ("size", "large")])
    assert _ids(result) == [both.id]
    assert result.title == "Tagged: colour: red, size: large"


def test_category_without_tags_matches_nothing(db, settings, add_file):
    add_file("a.jpg", "colour:red")
    result = filters.filter_files(db, settings, [("nonexistent", "x")])
    assert result.files == [] and result.total_count == 0


def test_filter_paginates_with_count_first(db, settings, add_file):
    ids = [add_file(f"{i}.jpg", "colour:red").id for i in range(12)]

    page_two = filters.filter_files(db, settings, [("colour", "red")], page=2)

    assert page_two.total_count == 12
    assert [f.id for f in page_two.files] == [ids[1], ids[0]]
    assert page_two.pagination.total_pages == 2


def test_browse_splits_tagged_and_untagged(db, settings, add_file):
    tagged = add_file("a.jpg", "colour:red")
    untagged = add_file("b.jpg")

    listing = filters.browse(db, settings)
    assert [f.id for f in listing.tagged] == [tagged.id]
    assert [f.id for f in listing.untagged] == [untagged.id]
    assert listing.tagged[0].tags == {"colour": ["red"]}

    assert [f.id for f in filters.list_untagged(db, settings).files] == [untagged.id]
