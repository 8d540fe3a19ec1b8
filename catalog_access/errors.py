from __future__ import annotations


class CatalogAccessError(Exception):
    pass


class NotFound(CatalogAccessError):
    def __init__(self, entity: str, key) -> None:
        super().__init__(f'{entity} {key!r} not found')
        self.entity = entity
        self.key = key


class PlanError(CatalogAccessError):
    pass


class PlanNotFound(PlanError):
    def __init__(self, entity: str, name: str) -> None:
        super().__init__(f'No fetch plan {name!r} registered for {entity}')
        self.entity = entity
        self.name = name


class DuplicatePlan(PlanError):
    def __init__(self, entity: str, name: str) -> None:
        super().__init__(f'Fetch plan {name!r} is already registered for {entity}')
        self.entity = entity
        self.name = name


class UnknownRelation(PlanError):
    def __init__(self, entity: str, path: str) -> None:
        super().__init__(f'{entity} has no relation path {path!r}')
        self.entity = entity
        self.path = path


class RegistrySealed(PlanError):
    pass


class InvalidRequest(CatalogAccessError, ValueError):
    pass


class UnknownEntity(InvalidRequest):
    pass


class UnknownField(InvalidRequest):
    pass


class InvalidPageRequest(InvalidRequest):
    pass


class InvalidPageSize(InvalidPageRequest):
    pass


class InvalidCursor(InvalidPageRequest):
    pass


class InvalidSort(InvalidPageRequest):
    pass


class RelationNotLoaded(CatalogAccessError):
    def __init__(self, entity: str | None = None, relation: str | None = None) -> None:
        if entity and relation:
            message = f'{entity}.{relation} was not loaded; add it to the fetch plan'
        else:
            message = 'Relation was not loaded; add it to the fetch plan'
        super().__init__(message)
        self.entity = entity
        self.relation = relation


class ExecutionError(CatalogAccessError):
    pass
