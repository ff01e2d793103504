"""Tests for eager loading: one query per relation level, whatever the row count."""

from __future__ import annotations

import pytest

from blog import Comment, Country, Post, Tag, User
from ormgraph import noload, selectinload


@pytest.fixture
def queries(seeded):
    """Start counting statements after the fixture rows are in."""
    seeded.connection.enable_query_log()
    seeded.connection.flush_query_log()
    return lambda: len(seeded.connection.get_query_log())


def by_id(models) -> dict:
    return {m.id: m for m in models}


class TestQueryCounts:
    """Each relation level costs exactly one query (one per type for morph_to)."""

    def test_has_many(self, seeded, queries) -> None:
        seeded.query(User).with_("posts").get()
        assert queries() == 2

    def test_nested(self, seeded, queries) -> None:
        seeded.query(User).with_("posts.comments").get()
        assert queries() == 3

    def test_two_relations(self, seeded, queries) -> None:
        seeded.query(User).with_("posts", "roles").get()
        assert queries() == 3

    def test_morph_to_one_query_per_type(self, seeded, queries) -> None:
        seeded.query(Comment).with_("commentable").get()
        assert queries() == 3

    def test_nested_below_morph_to(self, seeded, queries) -> None:
        """Posts and videos each load their tags."""
        seeded.query(Comment).with_("commentable.tags").get()
        assert queries() == 5

    def test_no_keys_no_query(self, seeded, queries) -> None:
        dave = seeded.query(User).where("name", "Dave").with_("country").first()

        assert queries() == 1
        assert dave.country is None

    def test_empty_result_skips_relations(self, seeded, queries) -> None:
        assert seeded.query(User).where("name", "Zed").with_("posts").get() == []
        assert queries() == 1

    def test_without(self, seeded, queries) -> None:
        seeded.query(User).with_("posts.comments", "roles").without("posts").get()
        assert queries() == 2

    @pytest.mark.parametrize("count", [1, 10_000])
    def test_independent_of_row_count(self, session, count) -> None:
        session.connection.statement(
            "WITH RECURSIVE seq(n) AS (SELECT 1 UNION ALL SELECT n + 1 FROM seq WHERE n < ?) "
            "INSERT INTO users (name) SELECT 'user ' || n FROM seq",
            [count],
        )
        session.connection.statement("INSERT INTO posts (user_id, title) SELECT id, 'post for ' || id FROM users")
        session.connection.enable_query_log()

        users = session.query(User).with_("posts").get()

        assert len(session.connection.get_query_log()) == 2
        assert len(users) == count
        assert all(len(u.posts) == 1 for u in users)


class TestLoadedValues:
    """Tests for matching loaded rows back onto their parents."""

    def test_has_many_excludes_trashed(self, seeded) -> None:
        users = by_id(seeded.query(User).with_("posts").get())

        assert sorted(p.title for p in users[1].posts) == ["Alice one", "Alice two"]
        assert [p.title for p in users[2].posts] == ["Bob one"]
        assert users[3].posts == []
        assert users[4].posts == []

    def test_belongs_to(self, seeded) -> None:
        users = by_id(seeded.query(User).with_("country", "manager").get())

        assert users[1].country.name == "New Zealand"
        assert users[3].country.name == "Australia"
        assert users[4].country is None
        assert users[1].manager is None
        assert users[4].manager.name == "Bob"

    def test_self_referencing_has_many(self, seeded) -> None:
        users = by_id(seeded.query(User).with_("reports").get())
        assert sorted(r.name for r in users[1].reports) == ["Bob", "Carol"]
        assert users[3].reports == []

    def test_belongs_to_many(self, seeded) -> None:
        users = by_id(seeded.query(User).with_("roles").get())

        assert {r.name for r in users[1].roles} == {"admin", "editor"}
        assert [r.name for r in users[2].roles] == ["editor"]
        assert users[3].roles == []

    def test_pivot_key_is_selected(self, seeded) -> None:
        alice = seeded.query(User).where("id", 1).with_("roles").first()
        assert {r.pivot_user_id for r in alice.roles} == {1}

    def test_has_many_through(self, seeded) -> None:
        countries = by_id(seeded.query(Country).with_("posts").get())

        assert sorted(p.title for p in countries[1].posts) == ["Alice one", "Alice two", "Bob one"]
        assert countries[2].posts == []

    def test_has_one_through(self, seeded) -> None:
        countries = by_id(seeded.query(Country).with_("profile").get())

        assert countries[1].profile.bio == "Alice writes about databases"
        assert countries[2].profile.bio == "Carol writes about compilers"

    def test_morph_one(self, seeded) -> None:
        users = by_id(seeded.query(User).with_("image").get())
        assert users[1].image.url == "alice.png"
        assert users[2].image is None

    def test_morph_to(self, seeded) -> None:
        """The comment on a trashed post resolves to None."""
        comments = by_id(seeded.query(Comment).with_("commentable").get())

        assert isinstance(comments[1].commentable, Post)
        assert comments[1].commentable.id == 1
        assert comments[3].commentable.title == "Intro"
        assert comments[4].commentable is None

    def test_morph_to_many_both_directions(self, seeded) -> None:
        posts = by_id(seeded.query(Post).with_("tags").get())
        tags = by_id(seeded.query(Tag).with_("posts", "videos").get())

        assert {t.name for t in posts[1].tags} == {"orm", "sql"}
        assert posts[2].tags == []
        assert sorted(p.id for p in tags[1].posts) == [1, 3]
        assert [v.title for v in tags[2].videos] == ["Intro"]
        assert tags[1].videos == []

    def test_nested_values(self, seeded) -> None:
        alice = seeded.query(User).where("id", 1).with_("posts.comments").first()
        comments = {p.title: sorted(c.body for c in p.comments) for p in alice.posts}
        assert comments == {"Alice one": ["meh", "nice"], "Alice two": []}


class TestConstraints:
    """Tests for constrained eager loads."""

    def test_constraint(self, seeded) -> None:
        users = by_id(seeded.query(User).with_({"posts": lambda q: q.where("published", True)}).get())
        assert [p.title for p in users[1].posts] == ["Alice one"]

    def test_or_constraint_stays_inside_keys(self, seeded) -> None:
        """Bob's post must not appear under Alice because of the OR."""
        users = by_id(
            seeded.query(User)
            .with_({"posts": lambda q: q.where("views", 10).or_where("views", 7)})
            .get()
        )
        assert [p.title for p in users[1].posts] == ["Alice one"]
        assert [p.title for p in users[2].posts] == ["Bob one"]

    def test_ordered_constraint(self, seeded) -> None:
        alice = seeded.query(User).where("id", 1).with_({"posts": lambda q: q.order_by("-views")}).first()
        assert [p.views for p in alice.posts] == [10, 5]

    def test_load_options(self, seeded) -> None:
        users = by_id(
            seeded.query(User)
            .with_("roles")
            .options(selectinload("posts", lambda q: q.where("views", ">", 6)), noload("roles"))
            .get()
        )
        assert [p.title for p in users[1].posts] == ["Alice one"]
        assert not users[1].relation_loaded("roles")

    def test_with_where_has(self, seeded) -> None:
        users = seeded.query(User).with_where_has("posts", lambda q: q.where("published", False)).get()

        assert [u.id for u in users] == [1]
        assert [p.title for p in users[0].posts] == ["Alice two"]


class TestLoadAfterFetch:
    def test_session_load(self, seeded, queries) -> None:
        users = seeded.query(User).get()
        seeded.load(users, "roles", {"posts": lambda q: q.where("published", True)})

        assert queries() == 3
        assert by_id(users)[2].posts[0].title == "Bob one"

    def test_unloaded_relation_raises(self, seeded) -> None:
        user = seeded.query(User).first()
        with pytest.raises(AttributeError, match=r"with_\('posts'\)"):
            user.posts

    def test_to_dict_includes_relations(self, seeded) -> None:
        bob = seeded.query(User).where("id", 2).with_("posts").first()
        data = bob.to_dict(include_relations=True)
        assert [p["title"] for p in data["posts"]] == ["Bob one"]
