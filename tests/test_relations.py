"""Tests for relation resolution and the SQL shape of relation sub-queries."""

from __future__ import annotations

import pytest

from blog import Comment, Country, Post, Role, Tag, User, Video
from ormgraph import (
    Base,
    InvalidRelationError,
    Mapped,
    Registry,
    RelationKind,
    RelationNotFoundError,
    belongs_to_many,
    has_many,
    mapped_column,
)
from ormgraph.relations import STRATEGIES


class BlogAuthor(Base):
    __tablename__ = "blog_authors"

    id: Mapped[int] = mapped_column(primary_key=True)

    articles = has_many("Article")
    labels = belongs_to_many("Label")


class Article(Base):
    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(primary_key=True)
    blog_author_id: Mapped[int]


class Label(Base):
    __tablename__ = "labels"

    id: Mapped[int] = mapped_column(primary_key=True)


class TestResolution:
    """Tests for turning declarations into Relation descriptors."""

    def test_declarations_leave_the_class_namespace(self) -> None:
        """Relation attributes move into __relations__."""
        assert "posts" in User.__relations__
        assert "posts" not in User.__dict__

    def test_has_many_uses_declared_foreign_key(self, registry) -> None:
        relation = registry.relation(User, "posts")

        assert relation.kind is RelationKind.HAS_MANY
        assert relation.foreign_key() == "user_id"
        assert relation.local_key() == "id"
        assert relation.related is Post
        assert relation.related_table() == "posts"
        assert relation.parent_table() == "users"
        assert relation.is_many()

    def test_belongs_to_finds_owner_key(self, registry) -> None:
        relation = registry.relation(User, "country")

        assert relation.foreign_key() == "country_id"
        assert relation.local_key() == "id"
        assert not relation.is_many()

    def test_self_reference(self, registry) -> None:
        assert registry.relation(User, "reports").is_self_referencing()
        assert not registry.relation(User, "posts").is_self_referencing()

    def test_naming_conventions(self) -> None:
        """Without ForeignKey hints, keys come from the snake_case model name."""
        registry = Registry([BlogAuthor, Article, Label])

        articles = registry.relation(BlogAuthor, "articles")
        labels = registry.relation(BlogAuthor, "labels").pivot_info()

        assert articles.foreign_key() == "blog_author_id"
        assert labels.table == "blog_author_label"
        assert labels.foreign_pivot_key == "blog_author_id"
        assert labels.related_pivot_key == "label_id"

    def test_pivot_defaults(self, registry) -> None:
        pivot = registry.relation(User, "roles").pivot_info()

        assert pivot.table == "role_user"
        assert pivot.foreign_pivot_key == "user_id"
        assert pivot.related_pivot_key == "role_id"
        assert pivot.morph_type is None

    def test_polymorphic_pivot(self, registry) -> None:
        """Both directions share the pivot; the morph class is the non-tag side."""
        forward = registry.relation(Post, "tags").pivot_info()
        inverse = registry.relation(Tag, "posts").pivot_info()

        assert (forward.table, forward.foreign_pivot_key, forward.related_pivot_key) == (
            "taggables", "taggable_id", "tag_id",
        )
        assert (inverse.table, inverse.foreign_pivot_key, inverse.related_pivot_key) == (
            "taggables", "tag_id", "taggable_id",
        )
        assert forward.morph_class == inverse.morph_class == "post"
        assert forward.morph_type == "taggable_type"

    def test_through_keys(self, registry) -> None:
        relation = registry.relation(Country, "posts")
        through = relation.through_info()

        assert through.model is User
        assert through.first_key == "country_id"
        assert through.second_key == "user_id"
        assert through.second_local_key == "id"
        assert relation.is_many()
        assert not registry.relation(Country, "profile").is_many()

    def test_morph_to(self, registry) -> None:
        relation = registry.relation(Comment, "commentable")
        morph = relation.morph_info()

        assert relation.related is None
        assert (morph.type_column, morph.id_column) == ("commentable_type", "commentable_id")
        with pytest.raises(InvalidRelationError, match="polymorphic"):
            relation.related_table()

    def test_morph_many_records_parent_alias(self, registry) -> None:
        assert registry.relation(Post, "comments").morph_info().type_alias == "post"
        assert registry.relation(Video, "comments").morph_info().type_alias == "video"

    def test_every_kind_has_a_strategy(self, registry) -> None:
        assert set(STRATEGIES) == set(RelationKind)
        relation = registry.relation(User, "profile")
        assert relation.strategy is STRATEGIES[RelationKind.HAS_ONE]

    def test_resolution_is_deterministic(self, registry) -> None:
        """Resolving twice gives equal, immutable descriptors."""
        first = registry.relation(User, "roles")
        assert first == registry.relation(User, "roles")
        with pytest.raises(AttributeError):
            first.name = "other"

    def test_unknown_relation(self, registry) -> None:
        with pytest.raises(RelationNotFoundError, match=r"\[nope\] on model \[User\]"):
            registry.relation(User, "nope")


class TestHasSql:
    """Tests for the EXISTS / COUNT sub-queries relation filters compile to."""

    def test_has_many_exists(self, session) -> None:
        """Soft-deleted related rows are excluded inside the sub-query."""
        assert session.query(User).has("posts").to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM posts "
            "WHERE posts.user_id = users.id AND posts.deleted_at IS NULL)"
        )

    def test_count_comparison(self, session) -> None:
        """Anything other than >= 1 / < 1 compares a COUNT."""
        query = session.query(User).has("posts", ">=", 2)

        assert query.to_sql() == (
            "SELECT * FROM users WHERE (SELECT COUNT(*) FROM posts "
            "WHERE posts.user_id = users.id AND posts.deleted_at IS NULL) >= ?"
        )
        assert query.get_bindings() == [2]

    def test_doesnt_have(self, session) -> None:
        assert session.query(User).doesnt_have("profile").to_sql() == (
            "SELECT * FROM users WHERE NOT EXISTS (SELECT 1 FROM profiles WHERE profiles.user_id = users.id)"
        )

    def test_constraint_with_or_is_grouped(self, session) -> None:
        """An OR inside a constraint cannot escape the relation keys."""
        query = session.query(User).where_has(
            "posts", lambda q: q.where("published", True).or_where("views", ">", 100)
        )

        assert query.to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM posts WHERE posts.user_id = users.id "
            "AND ((published = ? OR views > ?) AND posts.deleted_at IS NULL))"
        )
        assert query.get_bindings() == [True, 100]

    def test_ambiguous_columns_are_qualified(self, session) -> None:
        query = session.query(User).where_has("posts", lambda q: q.where("id", 3))
        assert "(posts.id = ? AND posts.deleted_at IS NULL)" in query.to_sql()

    def test_outer_bindings_keep_their_order(self, session) -> None:
        query = (
            session.query(User)
            .where("name", "Alice")
            .where_has("posts", lambda q: q.where("views", ">", 3))
            .where("active", True)
        )
        assert query.get_bindings() == ["Alice", 3, True]

    def test_belongs_to_on_soft_deleting_parent(self, session) -> None:
        """The parent's own scope is applied after the relation filter."""
        assert session.query(Post).has("author").to_sql() == (
            "SELECT * FROM posts WHERE EXISTS (SELECT 1 FROM users WHERE users.id = posts.user_id) "
            "AND posts.deleted_at IS NULL"
        )

    def test_where_relation(self, session) -> None:
        query = session.query(Post).where_relation("author", "name", "Alice")
        assert query.to_sql() == (
            "SELECT * FROM posts WHERE EXISTS (SELECT 1 FROM users WHERE users.id = posts.user_id "
            "AND name = ?) AND posts.deleted_at IS NULL"
        )
        assert query.get_bindings() == ["Alice"]


class TestSelfReference:
    """Tests for relations back onto the parent's own table."""

    def test_has_many_alias(self, session) -> None:
        assert session.query(User).has("reports").to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM users AS users_relation "
            "WHERE users_relation.manager_id = users.id)"
        )

    def test_nested_alias_gets_a_counter(self, session) -> None:
        assert session.query(User).has("reports.reports").to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM users AS users_relation "
            "WHERE users_relation.manager_id = users.id AND EXISTS (SELECT 1 FROM users AS users_relation_2 "
            "WHERE users_relation_2.manager_id = users_relation.id))"
        )

    def test_belongs_to_alias(self, session) -> None:
        assert session.query(User).has("manager").to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM users AS users_relation "
            "WHERE users_relation.id = users.manager_id)"
        )

    def test_constraint_is_qualified_with_alias(self, session) -> None:
        query = session.query(User).where_has("reports", lambda q: q.where("id", ">", 2))
        assert "users_relation.manager_id = users.id AND users_relation.id > ?" in query.to_sql()


class TestPivotSql:
    """Tests for many-to-many sub-queries."""

    def test_unconstrained_uses_pivot_only(self, session) -> None:
        assert session.query(User).has("roles").to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM role_user WHERE role_user.user_id = users.id)"
        )

    def test_related_column_adds_join(self, session) -> None:
        query = session.query(User).where_has("roles", lambda q: q.where("name", "admin"))
        assert query.to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM role_user "
            "INNER JOIN roles ON roles.id = role_user.role_id "
            "WHERE role_user.user_id = users.id AND name = ?)"
        )

    def test_pivot_column_needs_no_join(self, session) -> None:
        query = session.query(User).where_has("roles", lambda q: q.where("role_user.role_id", 2))
        assert query.to_sql() == (
            "SELECT * FROM users WHERE EXISTS (SELECT 1 FROM role_user "
            "WHERE role_user.user_id = users.id AND role_user.role_id = ?)"
        )

    def test_inverse_direction(self, session) -> None:
        assert session.query(Role).has("users").to_sql() == (
            "SELECT * FROM roles WHERE EXISTS (SELECT 1 FROM role_user WHERE role_user.role_id = roles.id)"
        )


class TestPolymorphicSql:
    """Tests for morph relations."""

    def test_morph_many(self, session) -> None:
        query = session.query(Post).has("comments")

        assert query.to_sql() == (
            "SELECT * FROM posts WHERE EXISTS (SELECT 1 FROM comments WHERE comments.commentable_id = posts.id "
            "AND comments.commentable_type = ?) AND posts.deleted_at IS NULL"
        )
        assert query.get_bindings() == ["post"]

    def test_morph_to_many(self, session) -> None:
        assert session.query(Post).has("tags").to_sql() == (
            "SELECT * FROM posts WHERE EXISTS (SELECT 1 FROM tags INNER JOIN taggables ON taggables.tag_id = tags.id "
            "WHERE taggables.taggable_id = posts.id AND taggables.taggable_type = ?) AND posts.deleted_at IS NULL"
        )

    def test_morphed_by_many(self, session) -> None:
        query = session.query(Tag).has("videos")

        assert query.to_sql() == (
            "SELECT * FROM tags WHERE EXISTS (SELECT 1 FROM videos "
            "INNER JOIN taggables ON taggables.taggable_id = videos.id "
            "WHERE taggables.tag_id = tags.id AND taggables.taggable_type = ?)"
        )
        assert query.get_bindings() == ["video"]

    def test_morph_to_refuses_plain_has(self, session) -> None:
        with pytest.raises(InvalidRelationError, match="where_has_morph"):
            session.query(Comment).has("commentable")
        with pytest.raises(InvalidRelationError):
            session.query(Comment).with_count("commentable")

    def test_has_morph_needs_morph_to(self, session) -> None:
        with pytest.raises(InvalidRelationError, match="not a morph_to"):
            session.query(User).where_has_morph("posts", ["post"])

    def test_where_has_morph_branch(self, session) -> None:
        query = session.query(Comment).where_has_morph("commentable", ["post"])

        assert query.to_sql() == (
            "SELECT * FROM comments WHERE ((comments.commentable_type = ? AND EXISTS "
            "(SELECT 1 FROM posts WHERE posts.id = comments.commentable_id AND posts.deleted_at IS NULL)))"
        )
        assert query.get_bindings() == ["post"]

    def test_where_has_morph_branches_are_ored(self, session) -> None:
        sql = session.query(Comment).where_has_morph("commentable", [Post, Video]).to_sql()
        assert ") OR (comments.commentable_type = ? AND EXISTS (SELECT 1 FROM videos" in sql

    def test_doesnt_have_morph_ands_not_exists(self, session) -> None:
        query = session.query(Comment).where_doesnt_have_morph("commentable", [Post, Video])

        assert query.to_sql() == (
            "SELECT * FROM comments WHERE (NOT EXISTS (SELECT 1 FROM posts WHERE posts.id = comments.commentable_id "
            "AND posts.deleted_at IS NULL AND comments.commentable_type = ?) AND NOT EXISTS (SELECT 1 FROM videos "
            "WHERE videos.id = comments.commentable_id AND comments.commentable_type = ?))"
        )
        assert query.get_bindings() == ["post", "video"]

    def test_no_types_matches_nothing(self, session) -> None:
        assert session.query(Comment).where_has_morph("commentable", []).to_sql() == (
            "SELECT * FROM comments WHERE 1 = 0"
        )


class TestThroughSql:
    """Tests for has-many-through sub-queries."""

    def test_joins_the_intermediate_table(self, session) -> None:
        assert session.query(Country).has("posts").to_sql() == (
            "SELECT * FROM countries WHERE EXISTS (SELECT 1 FROM posts INNER JOIN users ON users.id = posts.user_id "
            "WHERE users.country_id = countries.id AND posts.deleted_at IS NULL)"
        )

    def test_every_constraint_column_is_qualified(self, session) -> None:
        query = session.query(Country).where_has("posts", lambda q: q.where("published", True))
        assert query.to_sql().endswith(
            "WHERE users.country_id = countries.id AND (posts.published = ? AND posts.deleted_at IS NULL))"
        )


class TestAggregateSql:
    """Tests for with_count and friends."""

    def test_with_count_and_alias(self, session) -> None:
        assert session.query(User).with_count("posts", "roles as role_total").to_sql() == (
            "SELECT users.*, (SELECT COUNT(*) FROM posts WHERE posts.user_id = users.id "
            "AND posts.deleted_at IS NULL) AS posts_count, "
            "(SELECT COUNT(*) FROM role_user WHERE role_user.user_id = users.id) AS role_total FROM users"
        )

    def test_with_exists(self, session) -> None:
        assert session.query(User).with_exists("roles").to_sql() == (
            "SELECT users.*, CASE WHEN EXISTS (SELECT 1 FROM role_user WHERE role_user.user_id = users.id) "
            "THEN 1 ELSE 0 END AS roles_exists FROM users"
        )

    def test_with_sum_on_pivot_joins_related(self, session) -> None:
        """An aggregate over a related column forces the pivot join."""
        sql = session.query(User).with_max("roles", "id").to_sql()
        assert "(SELECT MAX(roles.id) FROM role_user INNER JOIN roles ON roles.id = role_user.role_id" in sql
        assert sql.endswith(") AS roles_max_id FROM users")

    def test_with_sum(self, session) -> None:
        assert "(SELECT SUM(posts.views) FROM posts WHERE posts.user_id = users.id" in (
            session.query(User).with_sum("posts", "views").to_sql()
        )

    def test_with_count_morph_uses_case(self, session) -> None:
        query = session.query(Comment).with_count_morph("commentable", [Post, Video])
        sql = query.to_sql()

        assert sql.startswith("SELECT comments.*, COALESCE(CASE WHEN comments.commentable_type = ? THEN (SELECT 1 FROM posts ")
        assert "WHEN comments.commentable_type = ? THEN (SELECT 1 FROM videos WHERE videos.id = comments.commentable_id)" in sql
        assert sql.endswith(" ELSE NULL END, 0) AS commentable_count FROM comments")
        assert query.get_bindings() == ["post", "video"]


class TestUnknownRelations:
    """Unknown relation names fail before any SQL runs."""

    def test_unknown_names_raise_without_sql(self, session) -> None:
        session.connection.enable_query_log()

        with pytest.raises(RelationNotFoundError, match=r"\[nope\] on model \[User\]"):
            session.query(User).has("nope")
        with pytest.raises(RelationNotFoundError, match=r"\[nope\] on model \[Post\]"):
            session.query(User).has("posts.nope")
        with pytest.raises(RelationNotFoundError, match=r"while resolving \[nope\.posts\]"):
            session.query(User).where_has("nope.posts")
        with pytest.raises(RelationNotFoundError):
            session.query(User).with_("posts.nope")
        with pytest.raises(RelationNotFoundError):
            session.query(User).with_count("nope")

        assert session.connection.get_query_log() == []


class TestGlobalScopesSql:
    """Tests for how global scopes combine with user predicates."""

    def test_scope_with_or_is_grouped(self, session, registry) -> None:
        registry.add_global_scope(User, "named", lambda q: q.where("name", "Alice").or_where("name", "Bob"))

        assert session.query(User).where("country_id", 2).to_sql() == (
            "SELECT * FROM users WHERE country_id = ? AND (name = ? OR name = ?)"
        )

    def test_user_or_is_grouped_before_scope(self, session) -> None:
        assert session.query(Post).where("views", ">", 5).or_where("published", True).to_sql() == (
            "SELECT * FROM posts WHERE (views > ? OR published = ?) AND posts.deleted_at IS NULL"
        )

    def test_with_trashed_and_only_trashed(self, session) -> None:
        assert session.query(Post).with_trashed().to_sql() == "SELECT * FROM posts"
        assert session.query(Post).only_trashed().to_sql() == "SELECT * FROM posts WHERE posts.deleted_at IS NOT NULL"

    def test_scopes_apply_inside_relation_subqueries(self, session, registry) -> None:
        registry.add_global_scope(User, "active", lambda q: q.where("active", True))

        assert session.query(Country).has("users").to_sql() == (
            "SELECT * FROM countries WHERE EXISTS (SELECT 1 FROM users WHERE users.country_id = countries.id "
            "AND active = ?)"
        )
