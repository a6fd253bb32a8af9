from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from pagescribe.core.errors import ConfigurationError


@dataclass(frozen=True)
class Endpoint:
    address: str
    model: str
    replica_count: int = 1

    def __post_init__(self) -> None:
        if not self.address:
            raise ConfigurationError("Endpoint address cannot be empty")
        if self.replica_count < 1:
            raise ConfigurationError(
                f"Endpoint {self.address!r} needs a replica count >= 1, got {self.replica_count}"
            )


def _parse_replica_count(raw: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        return 1
    return value if value >= 1 else 1


def parse_endpoint(token: str, model: str) -> Endpoint:
    """Parse `address[@weight]`. A missing or unusable weight means one slot."""
    address, sep, weight = token.strip().partition("@")
    address = address.strip()
    if not address:
        raise ConfigurationError(f"Missing endpoint address in {token!r}")
    replica_count = _parse_replica_count(weight) if sep else 1
    return Endpoint(address=address, model=model, replica_count=replica_count)


def parse_endpoints(tokens: Iterable[str], model: str) -> list[Endpoint]:
    endpoints: list[Endpoint] = []
    for token in tokens:
        for part in token.split(","):
            if part.strip():
                endpoints.append(parse_endpoint(part, model))
    return endpoints


class EndpointPool:
    """Positional round-robin assignment over endpoints weighted by replica count.

    The pool is a flat slot list where every endpoint appears `replica_count`
    times in a row. Assignment is `slots[index % len(slots)]` and carries no
    scheduling state, so it ignores endpoint latency and backlog.
    """

    def __init__(self, slots: tuple[Endpoint, ...]):
        if not slots:
            raise ConfigurationError("Endpoint pool is empty; configure at least one Ollama URL")
        self._slots = slots

    @classmethod
    def build(cls, endpoints: Iterable[Endpoint]) -> "EndpointPool":
        slots: list[Endpoint] = []
        for endpoint in endpoints:
            slots.extend([endpoint] * endpoint.replica_count)
        return cls(tuple(slots))

    def assign(self, index: int) -> Endpoint:
        return self._slots[index % len(self._slots)]

    @property
    def endpoints(self) -> list[Endpoint]:
        distinct: list[Endpoint] = []
        for endpoint in self._slots:
            if endpoint not in distinct:
                distinct.append(endpoint)
        return distinct

    def __len__(self) -> int:
        return len(self._slots)
