"""Tests for model definition, the registry and session writes."""

from __future__ import annotations

from datetime import datetime

import pytest

from blog import Comment, Post, User, Video
from ormgraph import (
    JSON,
    Base,
    Connection,
    ForeignKey,
    InvalidRelationError,
    Mapped,
    ModelNotFoundError,
    Registry,
    Session,
    SoftDeleteMixin,
    TimestampsMixin,
    create_session,
    has_many,
    mapped_column,
    session_context,
)
from ormgraph.fields import ColumnInfo
from ormgraph.mixins import utcnow


class Product(Base):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    attributes: Mapped[dict] = mapped_column(JSON, default=dict)
    sizes: Mapped[list]


class Note(Base, TimestampsMixin):
    __tablename__ = "notes"
    __morph_alias__ = "note"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str]

    products = has_many("Product", "owner_id")


@pytest.fixture
def store(connection, registry) -> Session:
    connection.statement(
        "CREATE TABLE products (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT, owner_id INTEGER, "
        "attributes TEXT, sizes TEXT)"
    )
    connection.statement(
        "CREATE TABLE notes (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT, created_at TEXT, updated_at TEXT)"
    )
    registry.register(Product, Note)
    return Session(connection, registry)


def test_default_tablename():
    """Without __tablename__ the lowercased class name is pluralized."""
    assert Product.__tablename__ == "products"
    assert Note.__tablename__ == "notes"


def test_columns_and_primary_key():
    assert set(Product.__columns__) == {"id", "name", "owner_id", "attributes", "sizes"}
    assert Product.__primary_key__ == "id"
    assert Product.__columns__["owner_id"].nullable
    assert not Product.__columns__["name"].nullable


def test_json_columns():
    """JSON comes from the marker or from a dict/list annotation."""
    assert Product.__columns__["attributes"].is_json
    assert Product.__columns__["sizes"].is_json
    assert not Product.__columns__["name"].is_json


def test_foreign_key():
    fk = Product.__columns__["owner_id"].foreign_key
    assert fk.target == "users.id"
    assert (fk.table, fk.column) == ("users", "id")
    assert ForeignKey("users").column == "id"


def test_mixin_columns():
    assert {"created_at", "updated_at"} <= set(Note.__columns__)
    assert "deleted_at" in Post.__columns__
    assert Post.__soft_delete__
    assert not User.__soft_delete__
    assert Note.__timestamps__


def test_init_defaults():
    product = Product(name="Lamp")
    assert product.attributes == {}
    assert product.owner_id is None
    assert repr(product) == "<Product>"


def test_unknown_keyword():
    with pytest.raises(TypeError, match="Unknown column or relation: colour"):
        Product(name="Lamp", colour="red")


def test_relations_passed_to_init_count_as_loaded():
    note = Note(title="n", products=[])
    assert note.relation_loaded("products")
    assert note.products == []


def test_from_dict_ignores_unknown_keys():
    product = Product.from_dict({"id": 3, "name": "Desk", "extra": 1})
    assert product.to_dict()["name"] == "Desk"
    assert repr(product) == "<Product id=3>"


def test_json_decode_keeps_invalid_text():
    column = ColumnInfo(is_json=True)
    assert column.decode('{"a": 1}') == {"a": 1}
    assert column.decode("not json") == "not json"
    assert column.decode(None) is None


def test_utcnow_is_aware():
    assert utcnow().tzinfo is not None


def test_soft_delete_mixin_flags():
    post = Post(user_id=1, title="t")
    assert not post.is_deleted
    post.mark_deleted()
    assert post.is_deleted
    post.mark_restored()
    assert not post.is_deleted


class TestRegistry:
    """Tests for model lookup, morph aliases and scope registration."""

    def test_get_model(self, registry) -> None:
        assert registry.get_model("User") is User
        assert registry.get_model("users") is User
        assert registry.get_model(Post) is Post
        with pytest.raises(InvalidRelationError, match="not registered"):
            registry.get_model("Invoice")

    def test_models_are_listed_once(self, registry) -> None:
        assert registry.models().count(User) == 1

    def test_decorator_registration(self) -> None:
        registry = Registry()
        assert registry.model(Note) is Note
        assert registry.get_model("notes") is Note

    def test_morph_alias_precedence(self) -> None:
        """Morph map, then __morph_alias__, then the class name."""
        registry = Registry([Note, Video])

        assert registry.get_morph_alias(Note) == "note"
        assert registry.get_morph_alias(Video) == "Video"

        registry.morph_map({"memo": Note})
        assert registry.get_morph_alias(Note) == "memo"
        assert registry.get_morphed_model("memo") is Note
        assert registry.get_morphed_model("Video") is Video

    def test_unknown_morph_type(self, registry) -> None:
        with pytest.raises(InvalidRelationError, match=r"Unknown morph type \[podcast\]"):
            registry.get_morphed_model("podcast")

    def test_soft_deletes_scope_comes_first(self, registry) -> None:
        registry.add_global_scope(Post, "published", lambda q: q.where("published", True))
        assert list(registry.global_scopes(Post)) == ["soft_deletes", "published"]
        assert registry.global_scopes(Comment) == {}

    def test_has_relation(self, registry) -> None:
        assert registry.has_relation(User, "posts")
        assert not registry.has_relation(User, "comments")


class TestSessionWrites:
    """Tests for inserting, updating and deleting through the session."""

    def test_insert_sets_generated_key(self, seeded) -> None:
        user = seeded.insert(User(name="Eve"))

        assert user.id == 5
        assert seeded.get(User, 5).name == "Eve"

    def test_insert_all_is_one_transaction(self, seeded) -> None:
        seeded.connection.enable_query_log()
        seeded.insert_all([User(name="Eve"), User(name="Frank")])

        log = [entry.sql for entry in seeded.connection.get_query_log()]
        assert log[0] == "BEGIN"
        assert log[-1] == "COMMIT"
        assert seeded.query(User).count() == 6

    def test_update(self, seeded) -> None:
        bob = seeded.get_or_raise(User, 2)
        seeded.update(bob, name="Robert", active=False)

        assert bob.name == "Robert"
        assert seeded.query(User).where("active", False).pluck("name") == ["Robert", "Dave"]

    def test_remove(self, seeded) -> None:
        seeded.remove(seeded.get(User, 4))
        assert seeded.get(User, 4) is None

    def test_remove_unsaved_model(self, seeded) -> None:
        with pytest.raises(ModelNotFoundError):
            seeded.remove(User(name="ghost"))

    def test_soft_delete_and_restore(self, seeded) -> None:
        post = seeded.get(Post, 1)

        seeded.soft_delete(post)
        assert post.is_deleted
        assert seeded.get(Post, 1) is None

        seeded.restore(post)
        assert not post.is_deleted
        assert seeded.get(Post, 1) is not None

    def test_force_delete(self, seeded) -> None:
        seeded.force_delete(seeded.get(Post, 4, include_deleted=True))
        assert seeded.query(Post).with_trashed().count() == 3

    def test_soft_delete_requires_mixin(self, seeded) -> None:
        with pytest.raises(TypeError, match="SoftDeleteMixin"):
            seeded.soft_delete(seeded.get(User, 1))

    def test_get_or_raise(self, seeded) -> None:
        with pytest.raises(ModelNotFoundError):
            seeded.get_or_raise(User, 99)


class TestTimestampsAndJson:
    def test_insert_stamps_both_columns(self, store) -> None:
        note = store.insert(Note(title="first"))

        assert isinstance(note.created_at, datetime)
        assert note.created_at == note.updated_at
        stored = store.table("notes").where("id", note.id).value("created_at")
        assert stored == note.created_at.isoformat(" ")

    def test_update_moves_updated_at(self, store) -> None:
        note = store.insert(Note(title="first"))
        created = note.created_at

        store.update(note, title="second")

        assert note.created_at == created
        assert note.updated_at >= created

    def test_json_round_trip(self, store) -> None:
        store.insert(Product(name="Lamp", attributes={"colour": "red"}, sizes=["s", "m"]))

        product = store.query(Product).first()

        assert product.attributes == {"colour": "red"}
        assert product.sizes == ["s", "m"]

    def test_declared_relation_with_explicit_key(self, store) -> None:
        note = store.insert(Note(title="catalogue"))
        store.insert(Product(name="Lamp", owner_id=note.id, sizes=[]))

        loaded = store.query(Note).with_("products").first()
        assert [p.name for p in loaded.products] == ["Lamp"]


class TestSessionLifecycle:
    """Tests for session construction and transaction scoping."""

    def test_exception_rolls_back_open_transaction(self, seeded, registry) -> None:
        with pytest.raises(RuntimeError):
            with Session(seeded.connection, registry) as session:
                session.connection.begin_transaction()
                session.insert(User(name="Eve"))
                raise RuntimeError("boom")

        assert seeded.connection.get_transaction_level() == 0
        assert seeded.query(User).count() == 4

    def test_session_context_commits(self, seeded, registry) -> None:
        with session_context(seeded.connection, registry) as session:
            session.insert(User(name="Eve"))

        assert seeded.query(User).count() == 5

    def test_session_context_rolls_back(self, seeded, registry) -> None:
        with pytest.raises(ValueError):
            with session_context(seeded.connection, registry) as session:
                session.insert(User(name="Eve"))
                raise ValueError("nope")

        assert seeded.query(User).count() == 4

    def test_nested_transaction_is_a_savepoint(self, seeded) -> None:
        with seeded.transaction():
            seeded.insert(User(name="Eve"))
            with pytest.raises(ValueError):
                with seeded.begin():
                    seeded.insert(User(name="Frank"))
                    raise ValueError("inner")

        assert sorted(seeded.query(User).where("id", ">", 4).pluck("name")) == ["Eve"]

    def test_create_session_from_url(self) -> None:
        session = create_session("sqlite::memory:")
        try:
            assert isinstance(session.connection, Connection)
            assert session.connection.get_driver_name() == "sqlite"
            assert session.registry.models() == []
        finally:
            session.close()


class SoftNote(Base, SoftDeleteMixin):
    __tablename__ = "soft_notes"

    id: Mapped[int] = mapped_column(primary_key=True)


def test_mixin_after_base_is_detected():
    assert SoftNote.__soft_delete__
    assert "deleted_at" in SoftNote.__columns__


class Draft(Base):
    __tablename__ = "drafts"

    id: Mapped[int] = mapped_column(primary_key=True)
    reviewer: Mapped[Reviewer | None]  # noqa: F821
    title: Mapped[str | None]


def test_annotations_resolve_to_types():
    assert Product.__columns__["owner_id"].python_type is int
    assert Product.__columns__["attributes"].python_type is dict
    assert Post.__columns__["deleted_at"].nullable


def test_unresolved_forward_reference_keeps_columns():
    """A name that is not defined yet leaves the class's hints as strings."""
    assert set(Draft.__columns__) == {"id", "reviewer", "title"}
    assert Draft.__columns__["reviewer"].nullable
    assert Draft.__columns__["title"].nullable
    assert not Draft.__columns__["id"].nullable
