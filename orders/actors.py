"""
Acting user resolved once per request into a set of capabilities.

Services check privileges through `Actor` predicates instead of inspecting
the user model or role names directly.
"""
import enum
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from .exceptions import Unauthenticated


class Capability(enum.Enum):
    ADMIN = 'admin'
    STORE_OWNER = 'store_owner'
    CUSTOMER = 'customer'


@dataclass(frozen=True)
class Actor:
    user_id: int
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)
    store_ids: FrozenSet[int] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return Capability.ADMIN in self.capabilities

    @property
    def is_store_owner(self) -> bool:
        return Capability.STORE_OWNER in self.capabilities

    def owns_store(self, store) -> bool:
        if store is None:
            return False
        store_id = getattr(store, 'pk', store)
        return self.is_store_owner and store_id in self.store_ids


def resolve_actor(user) -> Actor:
    """
    Build the Actor for an authenticated Django user.

    Raises:
        Unauthenticated: If there is no authenticated user
    """
    if user is None or not getattr(user, 'is_authenticated', False):
        raise Unauthenticated('You must be authenticated')

    store_ids = frozenset(user.owned_stores.values_list('id', flat=True))
    capabilities = {Capability.CUSTOMER}
    if user.is_staff or user.is_superuser:
        capabilities.add(Capability.ADMIN)
    if store_ids:
        capabilities.add(Capability.STORE_OWNER)

    return Actor(
        user_id=user.pk,
        capabilities=frozenset(capabilities),
        store_ids=store_ids,
    )


def actor_for_request(request) -> Optional[Actor]:
    """Cache the resolved actor on the request."""
    actor = getattr(request, '_actor', None)
    if actor is None:
        actor = resolve_actor(getattr(request, 'user', None))
        request._actor = actor
    return actor
