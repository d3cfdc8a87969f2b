"""Repository implementations for each storage backend."""

from crudcore.exceptions import ValidationError
from crudcore.model import EntityType
from crudcore.paging import Sort


def _check_sort_fields(entity_type: EntityType, sort: Sort, operation: str = "find_all") -> None:
    """Raise ``ValidationError`` when a sort names a field the entity lacks."""
    unknown = [order.field for order in sort.orders if order.field not in entity_type.descriptors]
    if unknown:
        raise ValidationError(
            entity_name=entity_type.name,
            operation=operation,
            fields={name: "unknown sort field" for name in unknown},
        )
