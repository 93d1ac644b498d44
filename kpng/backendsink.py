"""A local sink that rebuilds services and their endpoints for a backend callback."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator

from .localnet import Endpoint, OpItem, OpKind, Service, Set, decode_message
from .store2diff import LocalDiffConfig

Callback = Callable[[Iterable["ServiceEndpoints"]], None]


@dataclass
class ServiceEndpoints:
    service: Service
    endpoints: list[Endpoint] = field(default_factory=list)


def _path_key(path: str) -> tuple[int, ...]:
    return tuple(-1 if b == 0x2F else b for b in path.encode())


def path_less(a: str, b: str) -> bool:
    """Path order where '/' sorts before every other character."""
    return _path_key(a) < _path_key(b)


def to_array_callback(callback: Callable[[list[ServiceEndpoints]], None]) -> Callback:
    """Wrap a handler of a complete list into a callback fed one item at a time."""

    def consume(items: Iterable[ServiceEndpoints]) -> None:
        callback(list(items))

    return consume


def array_backend(*handlers: Callable[[list[ServiceEndpoints]], None]) -> Callback:
    """A callback that hands the full list to each of ``handlers``."""

    def dispatch(items: list[ServiceEndpoints]) -> None:
        for handler in handlers:
            handler(items)

    return to_array_callback(dispatch)


_VALUE_TYPES = {
    Set.SERVICES_SET: Service,
    Set.ENDPOINTS_SET: Endpoint,
}


class BackendSink:
    """Keeps the local state by path and hands it to the callback on each sync."""

    def __init__(self, config: LocalDiffConfig | None, callback: Callback | None = None) -> None:
        self.config = config
        self.callback = callback
        self._data: dict[str, Service | Endpoint] = {}

    def wait_request(self) -> str:
        return self.config.node_name

    def reset(self) -> None:
        self._data.clear()

    def send(self, op: OpItem) -> None:
        if op.kind == OpKind.SET:
            cls = _VALUE_TYPES.get(op.ref.set)
            if cls is None:
                return
            self._data[op.ref.path] = decode_message(cls, op.data)
        elif op.kind == OpKind.DELETE:
            self._data.pop(op.ref.path, None)
        elif op.kind == OpKind.SYNC:
            if self.callback is None:
                raise ValueError("no callback set")
            self.callback(self._service_endpoints())

    def _service_endpoints(self) -> Iterator[ServiceEndpoints]:
        current: ServiceEndpoints | None = None
        for path in sorted(self._data, key=_path_key):
            value = self._data[path]
            if isinstance(value, Service):
                if current is not None:
                    yield current
                current = ServiceEndpoints(service=value)
            else:
                if current is None:
                    raise ValueError(f"endpoint without a service: {path}")
                current.endpoints.append(value)
        if current is not None:
            yield current