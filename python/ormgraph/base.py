"""Declarative base for ORM models."""

from __future__ import annotations

import inspect
import sys
import types
import typing
from typing import TYPE_CHECKING, Any, ClassVar

from ormgraph.fields import ColumnInfo, Mapped

if TYPE_CHECKING:
    from ormgraph.relations import RelationDeclaration


class ModelMeta(type):
    """Metaclass for ORM models that collects columns and relation declarations.

    Models are not registered anywhere as a side effect of being defined;
    hand them to a :class:`~ormgraph.registry.Registry` explicitly.
    """

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # Skip processing for the Base class itself
        if name == "Base" and not bases:
            return cls

        from ormgraph.relations import RelationDeclaration

        tablename = namespace.get("__tablename__")
        if tablename is None:
            tablename = name.lower() + "s"
        cls.__tablename__ = tablename  # type: ignore[attr-defined]

        columns: dict[str, ColumnInfo] = {}
        relations: dict[str, RelationDeclaration] = {}

        # Inherited relations first so subclasses can override them
        for base in reversed(cls.__mro__[1:]):
            relations.update(getattr(base, "__relations__", {}))

        hints = _resolve_hints(cls)

        for attr_name, attr_value in namespace.items():
            if attr_name.startswith("_"):
                continue
            if isinstance(attr_value, ColumnInfo):
                column = attr_value.copy(attr_name)
                python_type, nullable = _mapped_type(hints.get(attr_name))
                column.python_type = python_type
                column.nullable = column.nullable or (nullable and not column.primary_key)
                if python_type is dict or python_type is list:
                    column.is_json = True
                columns[attr_name] = column
            elif isinstance(attr_value, RelationDeclaration):
                relations[attr_name] = attr_value.named(attr_name)
                # Loaded values are served by __getattr__
                delattr(cls, attr_name)

        # Columns contributed by parent classes and mixins (SoftDeleteMixin)
        for base in bases:
            for attr_name, column in getattr(base, "__columns__", {}).items():
                columns.setdefault(attr_name, column.copy(attr_name))
            for attr_name in dir(base):
                if attr_name.startswith("_") or attr_name in columns:
                    continue
                attr_value = getattr(base, attr_name, None)
                if isinstance(attr_value, ColumnInfo):
                    columns[attr_name] = attr_value.copy(attr_name)

        # Bare ``name: Mapped[str]`` annotations
        for attr_name, hint in hints.items():
            if attr_name.startswith("_") or attr_name in columns or attr_name in relations:
                continue
            if not _is_mapped(hint):
                continue
            python_type, nullable = _mapped_type(hint)
            columns[attr_name] = ColumnInfo(
                name=attr_name,
                python_type=python_type,
                nullable=nullable,
                is_json=python_type is dict or python_type is list,
            )

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__relations__ = relations  # type: ignore[attr-defined]

        primary_key = next((n for n, c in columns.items() if c.primary_key), None)
        if primary_key is None and "id" in columns:
            primary_key = "id"
        cls.__primary_key__ = primary_key or "id"  # type: ignore[attr-defined]

        # Mixins may sit after Base in the bases list, so look past the MRO order
        for flag in ("__soft_delete__", "__timestamps__"):
            inherited = any(k.__dict__.get(flag, False) for k in cls.__mro__[1:])
            setattr(cls, flag, namespace.get(flag, inherited))

        return cls


def _resolve_hints(cls: type) -> dict[str, Any]:
    """Type hints for ``cls`` and its bases.

    When a forward reference cannot be resolved yet, hints are resolved class
    by class against each class's own module; a class that still fails keeps
    its annotations as strings, which ``_mapped_type`` can read.
    """
    try:
        return typing.get_type_hints(cls, globalns=_namespace_for(cls), localns={})
    except (NameError, TypeError):
        pass

    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        annotations = _own_annotations(klass)
        if not annotations:
            continue
        holder = types.SimpleNamespace(__annotations__=annotations)
        try:
            hints.update(typing.get_type_hints(holder, globalns=_namespace_for(klass), localns={}))
        except (NameError, TypeError):
            hints.update(annotations)
    return hints


def _namespace_for(klass: type) -> dict[str, Any]:
    # Import here to avoid circular imports
    from ormgraph.relations import RelationDeclaration

    module = sys.modules.get(klass.__module__)
    globalns = dict(getattr(module, "__dict__", {}))
    globalns["ColumnInfo"] = ColumnInfo
    globalns["RelationDeclaration"] = RelationDeclaration
    globalns["Mapped"] = Mapped
    globalns["ClassVar"] = ClassVar
    globalns["Any"] = Any
    return globalns


def _own_annotations(klass: type) -> dict[str, Any]:
    if "__annotations__" in klass.__dict__:
        return dict(klass.__dict__["__annotations__"])
    try:
        return dict(inspect.get_annotations(klass))
    except NameError:
        return {}


def _is_mapped(hint: Any) -> bool:
    if isinstance(hint, str):
        return hint.startswith("Mapped[")
    return typing.get_origin(hint) is Mapped


def _mapped_type(hint: Any) -> tuple[type | None, bool]:
    """Extract ``(inner type, nullable)`` from a ``Mapped[T]`` annotation."""
    if hint is None:
        return None, False
    if isinstance(hint, str):
        return None, "None" in hint or "Optional[" in hint

    inner = hint
    if typing.get_origin(hint) is Mapped:
        args = typing.get_args(hint)
        inner = args[0] if args else None

    args = typing.get_args(inner)
    if args and type(None) in args:
        non_none = [a for a in args if a is not type(None)]
        inner = non_none[0] if len(non_none) == 1 else None
        return _plain_type(inner), True
    return _plain_type(inner), False


def _plain_type(hint: Any) -> type | None:
    origin = typing.get_origin(hint)
    if origin is not None:
        return origin if isinstance(origin, type) else None
    return hint if isinstance(hint, type) else None


class Base(metaclass=ModelMeta):
    """Base class for all ORM models.

    Example:
        >>> class User(Base):
        ...     __tablename__ = "users"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     posts = has_many("Post")
    """

    __tablename__: ClassVar[str]
    __columns__: ClassVar[dict[str, ColumnInfo]]
    __relations__: ClassVar[dict[str, RelationDeclaration]]
    __primary_key__: ClassVar[str]
    __soft_delete__: ClassVar[bool]
    __timestamps__: ClassVar[bool]
    __morph_alias__: ClassVar[str | None] = None

    _loaded_relations: dict[str, Any]

    def __init__(self, **kwargs: Any) -> None:
        """Initialize a model instance with the given column values."""
        object.__setattr__(self, "_loaded_relations", {})

        for key, value in kwargs.items():
            if key in self.__columns__:
                setattr(self, key, value)
            elif key in self.__relations__:
                self._set_relation(key, value)
            else:
                raise TypeError(f"Unknown column or relation: {key}")

        for col_name, col_info in self.__columns__.items():
            if col_name in kwargs:
                continue
            if col_info.default is not None:
                default = col_info.default() if callable(col_info.default) else col_info.default
                setattr(self, col_name, default)
            elif col_info.nullable:
                setattr(self, col_name, None)

    def __repr__(self) -> str:
        pk = self.__primary_key__
        if pk in self.__dict__:
            return f"<{self.__class__.__name__} {pk}={self.__dict__[pk]!r}>"
        return f"<{self.__class__.__name__}>"

    def __getattr__(self, name: str) -> Any:
        """Serve loaded relations; complain about relations that were not loaded."""
        if name.startswith("_"):
            if name == "_loaded_relations":
                loaded: dict[str, Any] = {}
                object.__setattr__(self, "_loaded_relations", loaded)
                return loaded
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        if name in type(self).__relations__:
            loaded = self._loaded_relations
            if name in loaded:
                return loaded[name]
            raise AttributeError(
                f"Relation '{name}' is not loaded on {type(self).__name__}. "
                f"Use with_('{name}') on the query or session.load(models, '{name}')."
            )

        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def _set_relation(self, name: str, value: Any) -> None:
        self._loaded_relations[name] = value

    def relation_loaded(self, name: str) -> bool:
        return name in self._loaded_relations

    def get_key(self) -> Any:
        """Primary key value, or None before the row exists."""
        return self.__dict__.get(self.__primary_key__)

    def to_dict(self, include_relations: bool = False) -> dict[str, Any]:
        """Convert model instance to a dictionary.

        Extra selected values (``posts_count`` and the like) are included.
        """
        result = {k: v for k, v in self.__dict__.items() if not k.startswith("_")}

        if include_relations:
            for rel_name, rel_value in self._loaded_relations.items():
                if isinstance(rel_value, list):
                    result[rel_name] = [item.to_dict(True) for item in rel_value]
                elif rel_value is not None:
                    result[rel_name] = rel_value.to_dict(True)
                else:
                    result[rel_name] = None

        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Base:
        """Create a model instance from a dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__columns__})

    @classmethod
    def _from_row_fast(cls, data: dict[str, Any]) -> Base:
        """Build a model from a database row without running ``__init__``.

        Keys that are not columns (aggregate aliases, pivot keys) are kept as
        plain attributes.
        """
        instance = object.__new__(cls)
        object.__setattr__(instance, "_loaded_relations", {})

        cols = cls.__columns__
        for key, value in data.items():
            col_info = cols.get(key)
            if col_info is not None:
                value = col_info.decode(value)
            object.__setattr__(instance, key, value)

        return instance
