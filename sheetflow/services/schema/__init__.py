"""Schema propagation services.

- cache.py: SchemaCache, process-local TTL store
- coordinator.py: PropagationCoordinator, dedup/debounce and scheduling state
- resolver.py: SchemaResolver, cache -> default sheet -> persisted store
- propagator.py: SchemaPropagator, edge-level propagation
- subscription.py: SchemaSubscription, Redis pub/sub listener
"""

from .cache import SchemaCache
from .coordinator import PropagationCoordinator
from .resolver import SchemaResolver
from .propagator import SchemaPropagator, PropagationResult
from .subscription import SchemaSubscription, publish_schema_update

__all__ = [
    "SchemaCache",
    "PropagationCoordinator",
    "SchemaResolver",
    "SchemaPropagator",
    "PropagationResult",
    "SchemaSubscription",
    "publish_schema_update",
]
