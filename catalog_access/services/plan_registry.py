from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache

from catalog_access.entities import EntityInfo, entity_info
from catalog_access.errors import DuplicatePlan, PlanNotFound, RegistrySealed, UnknownRelation
from catalog_access.logger import get_logger
from catalog_access.models import Category, Department, Order, OrderItem, Product, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanNode:
    relation: str
    children: tuple[PlanNode, ...] = ()


@dataclass(frozen=True)
class FetchPlan:
    """Which relations to load eagerly alongside a root entity.

    Built from a nested mapping (``{'user': {'department': {}}}``), an
    iterable of dotted paths (``['user.department', 'items']``) or a single
    dotted path. Every path is checked against the declared relations of the
    entity it walks through.
    """

    entity: str
    nodes: tuple[PlanNode, ...]
    name: str | None = None

    @classmethod
    def build(cls, entity, tree, name: str | None = None) -> FetchPlan:
        info = entity_info(entity)
        nodes = _validate(info, _normalize(tree), '')
        return cls(entity=info.name, nodes=nodes, name=name)

    def paths(self) -> list[str]:
        result: list[str] = []

        def walk(nodes: tuple[PlanNode, ...], prefix: str) -> None:
            for node in nodes:
                path = f'{prefix}{node.relation}'
                result.append(path)
                walk(node.children, f'{path}.')

        walk(self.nodes, '')
        return result

    def to_many_count(self) -> int:
        root = entity_info(self.entity)

        def count(info: EntityInfo, nodes: tuple[PlanNode, ...]) -> int:
            total = 0
            for node in nodes:
                relation = info.relations[node.relation]
                total += int(relation.to_many) + count(relation.target, node.children)
            return total

        return count(root, self.nodes)


def _normalize(tree) -> dict[str, dict]:
    if tree is None:
        return {}
    if isinstance(tree, str):
        tree = [tree]
    if isinstance(tree, Mapping):
        return {str(key): _normalize(value) for key, value in tree.items()}
    if isinstance(tree, Iterable):
        merged: dict[str, dict] = {}
        for path in tree:
            if not isinstance(path, str):
                raise TypeError(f'Relation paths must be strings, got {path!r}')
            cursor = merged
            for part in path.split('.'):
                cursor = cursor.setdefault(part.strip(), {})
        return merged
    raise TypeError(f'Unsupported relation tree {tree!r}')


def _validate(info: EntityInfo, tree: dict[str, dict], prefix: str) -> tuple[PlanNode, ...]:
    nodes = []
    for name, children in tree.items():
        path = f'{prefix}{name}'
        relation = info.relations.get(name)
        if relation is None:
            raise UnknownRelation(info.name, path)
        nodes.append(PlanNode(relation=name, children=_validate(relation.target, children, f'{path}.')))
    return tuple(nodes)


class PlanRegistry:
    """Named fetch plans per entity, filled at startup and then sealed."""

    def __init__(self) -> None:
        self._plans: dict[tuple[str, str], FetchPlan] = {}
        self._sealed = False

    def register(self, entity, name: str, tree) -> FetchPlan:
        if self._sealed:
            raise RegistrySealed(f'Cannot register {name!r}: registry is sealed')
        info = entity_info(entity)
        key = (info.name, name)
        if key in self._plans:
            raise DuplicatePlan(info.name, name)
        plan = FetchPlan.build(info, tree, name=name)
        self._plans[key] = plan
        logger.debug('Registered fetch plan %s.%s: %s', info.name, name, ', '.join(plan.paths()))
        return plan

    def resolve(self, entity, name: str) -> FetchPlan:
        info = entity_info(entity)
        plan = self._plans.get((info.name, name))
        if plan is None:
            raise PlanNotFound(info.name, name)
        return plan

    def plan_for(self, entity, plan) -> FetchPlan | None:
        if plan is None:
            return None
        info = entity_info(entity)
        if isinstance(plan, FetchPlan):
            if plan.entity != info.name:
                raise UnknownRelation(info.name, f'<plan for {plan.entity}>')
            return plan
        if isinstance(plan, str):
            return self.resolve(info, plan)
        return FetchPlan.build(info, plan)

    def names(self, entity) -> list[str]:
        info = entity_info(entity)
        return sorted(name for entity_name, name in self._plans if entity_name == info.name)

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed


def default_registry() -> PlanRegistry:
    registry = PlanRegistry()
    registry.register(User, 'with_department', ['department'])
    registry.register(Order, 'with_user_and_department', {'user': {'department': {}}})
    registry.register(Order, 'with_items', {'items': {'product': {}}})
    registry.register(Order, 'with_user_and_items', {'user': {'department': {}}, 'items': {'product': {}}})
    registry.register(Department, 'with_users', ['users'])
    registry.register(Category, 'with_products', ['products'])
    registry.register(Product, 'with_category', ['category'])
    registry.register(OrderItem, 'with_order_and_product', ['order', 'product'])
    registry.seal()
    return registry


@lru_cache(maxsize=1)
def get_default_registry() -> PlanRegistry:
    return default_registry()
