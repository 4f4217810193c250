"""
Scope / authorization matrix.

Maps the scopes a caller requests to Granted or Denied for a given consent
payload. The payload encoding is opaque to this package; deployments plug
in a matrix that understands their consent string format.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence

from consent_lineage.schemas.consent import ConsentDecision


class ScopeMatrix(ABC):
    """Policy collaborator consulted by the validity engine."""

    @abstractmethod
    def evaluate(self, consent_payload: str, requested_scopes: Sequence[str]) -> ConsentDecision:
        """Return Granted or Denied for the requested scopes."""


class AllowAllScopeMatrix(ScopeMatrix):
    """Grants every request for a non-empty payload."""

    def evaluate(self, consent_payload: str, requested_scopes: Sequence[str]) -> ConsentDecision:
        return ConsentDecision.GRANTED if consent_payload else ConsentDecision.DENIED


class MappingScopeMatrix(ScopeMatrix):
    """
    Grants a request when every requested scope is allowed for the payload.

    An empty scope request is granted only for payloads the matrix knows.
    """

    def __init__(self, grants: Mapping[str, Iterable[str]]):
        self._grants = {payload: frozenset(scopes) for payload, scopes in grants.items()}

    def evaluate(self, consent_payload: str, requested_scopes: Sequence[str]) -> ConsentDecision:
        allowed = self._grants.get(consent_payload)
        if allowed is None:
            return ConsentDecision.DENIED
        if set(requested_scopes) <= allowed:
            return ConsentDecision.GRANTED
        return ConsentDecision.DENIED
