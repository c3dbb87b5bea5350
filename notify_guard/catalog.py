from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class KnownPort:
    port: int
    label: str


DEFAULT_KNOWN_PORTS: tuple[KnownPort, ...] = (
    KnownPort(21, "FTP"),
    KnownPort(22, "SFTP/SSH"),
    KnownPort(80, "HTTP"),
    KnownPort(443, "HTTPS"),
    KnownPort(502, "Modbus TCP"),
    KnownPort(1883, "MQTT"),
    KnownPort(8883, "MQTTS"),
    KnownPort(3671, "KNX/IP"),
)


def load_catalog_file(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Port catalog YAML must be a mapping")
    return data


def normalize_known_ports(entries: list[Any]) -> tuple[KnownPort, ...]:
    """
    Accepts `- 502` or `- {port: 502, label: Modbus TCP}` entries.
    """
    out: list[KnownPort] = []
    seen: set[int] = set()
    for idx, entry in enumerate(entries):
        if isinstance(entry, dict):
            raw_port = entry.get("port")
            label = str(entry.get("label") or "").strip()
        else:
            raw_port = entry
            label = ""
        try:
            port = int(raw_port)
        except Exception as exc:
            raise ValueError(f"known_ports[{idx}].port must be an integer") from exc
        if not (1 <= port <= 65535):
            raise ValueError(f"known_ports[{idx}].port out of range: {port}")
        if port in seen:
            raise ValueError(f"Duplicate known port: {port}")
        seen.add(port)
        out.append(KnownPort(port=port, label=label or f"TCP {port}"))
    out.sort(key=lambda p: p.port)
    return tuple(out)


def load_known_ports(path: str | None) -> tuple[KnownPort, ...]:
    p = str(path or "").strip()
    if not p:
        return DEFAULT_KNOWN_PORTS
    cfg = load_catalog_file(Path(p))
    entries = cfg.get("known_ports")
    if not isinstance(entries, list) or not entries:
        raise ValueError("Port catalog YAML requires a non-empty known_ports list")
    return normalize_known_ports(entries)


class PortCatalog:
    """Protected set of ports every device carries; rows for these can be toggled but never deleted."""

    def __init__(self, ports: tuple[KnownPort, ...], *, service_port: int) -> None:
        self._by_port = {p.port: p for p in ports}
        self.service_port = int(service_port)
        if self.service_port not in self._by_port:
            raise ValueError(f"Service port {self.service_port} must be listed in known_ports")

    @classmethod
    def from_settings(cls, settings: Any) -> "PortCatalog":
        return cls(load_known_ports(settings.known_ports_path), service_port=settings.service_port)

    @property
    def ports(self) -> list[KnownPort]:
        return [self._by_port[p] for p in sorted(self._by_port)]

    def is_known(self, port: int) -> bool:
        return int(port) in self._by_port

    def resolve(self, port: int) -> KnownPort | None:
        return self._by_port.get(int(port))

    def label_for(self, port: int) -> str:
        known = self.resolve(port)
        return known.label if known else f"TCP {int(port)}"
