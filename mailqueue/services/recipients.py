"""
Recipient resolvers turn a campaign's target_audience selector into the
list of addressees. The host application supplies its own resolver backed
by its registration data; MappingRecipientResolver covers tests and
simple deployments.
"""

from typing import Dict, Iterable, List, Protocol

from mailqueue.schemas.email_campaign import Recipient


class RecipientResolver(Protocol):
    def resolve_audience(self, selector: str) -> List[Recipient]:
        ...


class MappingRecipientResolver:
    """Resolves selectors from a fixed {selector: recipients} mapping."""

    def __init__(self, audiences: Dict[str, Iterable[Recipient]]):
        self._audiences = {key.upper(): list(value) for key, value in audiences.items()}

    def resolve_audience(self, selector: str) -> List[Recipient]:
        return list(self._audiences.get((selector or "").upper(), []))
