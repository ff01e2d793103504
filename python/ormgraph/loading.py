"""Eager loading of relations.

An eager-load plan maps relation paths (``"posts"``, ``"posts.comments"``)
to an optional constraint callback. Loading runs one query per path level
no matter how many parents there are: keys are collected from every parent,
the related rows are fetched with a single ``IN`` query, and the results are
partitioned back onto their parents by key.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ormgraph.logging import get_logger
from ormgraph.relations import MorphToStrategy, RelationKind

if TYPE_CHECKING:
    from ormgraph.base import Base
    from ormgraph.relations import Relation
    from ormgraph.session import Session

logger = get_logger(__name__)

Constraint = Callable[[Any], Any]
Plan = dict[str, Constraint | None]


@dataclass
class LoadOption:
    """A relation loading option passed to ``query.options()``."""

    strategy: str  # "selectin" or "noload"
    attribute: str
    constraint: Constraint | None = None

    def __repr__(self) -> str:
        return f"<LoadOption {self.strategy} {self.attribute}>"


def selectinload(attr: str, constraint: Constraint | None = None) -> LoadOption:
    """Eager load a relation with a separate ``SELECT ... WHERE key IN (...)``.

    Example:
        >>> users = session.query(User).options(selectinload("posts")).get()
        >>> users = session.query(User).options(
        ...     selectinload("posts", lambda q: q.where("published", True))
        ... ).get()
    """
    return LoadOption("selectin", attr, constraint)


def noload(attr: str) -> LoadOption:
    """Drop a relation from the eager-load plan.

    Example:
        >>> session.query(User).with_("posts").options(noload("posts")).get()
    """
    return LoadOption("noload", attr)


def parse_relations(relations: Iterable[Any]) -> Plan:
    """Normalize ``with_()`` arguments into an ordered plan.

    Accepts relation names, lists of names and ``{name: constraint}`` dicts.
    Intermediate levels of a dotted path are added without a constraint.
    """
    plan: Plan = {}
    for item in relations:
        if isinstance(item, dict):
            entries = list(item.items())
        elif isinstance(item, (list, tuple, set)):
            entries = [(name, None) for name in item]
        else:
            entries = [(item, None)]

        for path, constraint in entries:
            segments = path.split(".")
            for depth in range(1, len(segments)):
                plan.setdefault(".".join(segments[:depth]), None)
            plan[path] = constraint
    return plan


def _split_plan(plan: Plan) -> dict[str, tuple[Constraint | None, Plan]]:
    """Group a plan by its first path segment."""
    levels: dict[str, tuple[Constraint | None, Plan]] = {}
    for path, constraint in plan.items():
        first, _, rest = path.partition(".")
        current, nested = levels.get(first, (None, {}))
        if rest:
            nested[rest] = constraint
        else:
            current = constraint
        levels[first] = (current, nested)
    return levels


def _collect_keys(models: Sequence[Base], column: str) -> list[Any]:
    keys = (model.__dict__.get(column) for model in models)
    return list(dict.fromkeys(k for k in keys if k is not None))


def eager_load(session: Session, models: Sequence[Base], plan: Plan) -> None:
    """Load every relation in ``plan`` onto ``models`` in place."""
    if not models or not plan:
        return

    by_class: dict[type[Base], list[Base]] = defaultdict(list)
    for model in models:
        by_class[type(model)].append(model)

    for name, (constraint, nested) in _split_plan(plan).items():
        for model_cls, parents in by_class.items():
            relation = session.registry.relation(model_cls, name)
            loaded = _load_relation(session, relation, parents, constraint)
            if nested and loaded:
                eager_load(session, loaded, nested)


def _load_relation(
    session: Session,
    relation: Relation,
    parents: Sequence[Base],
    constraint: Constraint | None,
) -> list[Base]:
    strategy = relation.strategy
    if relation.kind is RelationKind.MORPH_TO:
        assert isinstance(strategy, MorphToStrategy)
        return _load_morph_to(session, relation, strategy, parents, constraint)

    keys = _collect_keys(parents, strategy.parent_key_column(relation))
    if not keys:
        for parent in parents:
            parent._set_relation(relation.name, [] if relation.is_many() else None)
        return []

    items = strategy.materialize(relation, session, keys, constraint).get()
    strategy.match(relation, parents, items)
    logger.debug(
        "relation_loaded",
        relation=relation.name,
        parent=relation.parent.__name__,
        parents=len(parents),
        rows=len(items),
    )
    return items


def _load_morph_to(
    session: Session,
    relation: Relation,
    strategy: MorphToStrategy,
    parents: Sequence[Base],
    constraint: Constraint | None,
) -> list[Base]:
    """One query per distinct type found in the parents' type column."""
    morph = relation.morph_info()
    assert morph is not None

    by_type: dict[str, list[Base]] = defaultdict(list)
    for parent in parents:
        alias = parent.__dict__.get(morph.type_column)
        if alias is None:
            parent._set_relation(relation.name, None)
        else:
            by_type[alias].append(parent)

    loaded: list[Base] = []
    for alias, group in by_type.items():
        model = session.registry.get_morphed_model(alias)
        keys = _collect_keys(group, morph.id_column)
        items = strategy.materialize_type(relation, session, model, keys, constraint).get() if keys else []
        strategy.match_type(relation, group, items)
        loaded.extend(items)
    return loaded
