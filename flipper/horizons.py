from __future__ import annotations

from dataclasses import dataclass

GRANULARITY_SECONDS = {
    "5m": 300,
    "1h": 3600,
    "6h": 21600,
    "24h": 86400,
}

# Each table keeps one interval beyond the longest horizon it feeds.
RETENTION_SECONDS = {
    "5m": 24 * 3600 + 300,
    "1h": (24 * 7 + 1) * 3600,
    "6h": (24 * 30 + 6) * 3600,
    "24h": (24 * 366) * 3600,
}

EIS_TOLERANCE_RATIO = 0.2


@dataclass(frozen=True)
class Horizon:
    name: str
    seconds: int
    kind: str
    # Table the volume/turnover/latest-price aggregates are read from.
    source: str
    tolerance_seconds: int = 0
    fallback: str | None = None
    fallback_tolerance_seconds: int = 0
    resolve_chain: tuple[str, ...] = ()
    strict: bool = False

    @property
    def eis_tolerance_seconds(self) -> int:
        return int(self.seconds * EIS_TOLERANCE_RATIO)


def _build_horizons() -> dict[str, Horizon]:
    rows = [
        Horizon(name="5m", seconds=300, kind="short", source="5m", tolerance_seconds=120),
        Horizon(name="1h", seconds=3600, kind="short", source="5m", tolerance_seconds=300),
        Horizon(name="6h", seconds=21600, kind="short", source="5m", tolerance_seconds=900),
        Horizon(
            name="24h",
            seconds=86400,
            kind="short",
            source="5m",
            tolerance_seconds=3600,
            fallback="1h",
            fallback_tolerance_seconds=3600,
        ),
        Horizon(name="1w", seconds=7 * 86400, kind="window", source="1h", resolve_chain=("5m", "1h")),
        Horizon(name="1m", seconds=30 * 86400, kind="window", source="6h", resolve_chain=("5m", "1h", "6h")),
        Horizon(name="3m", seconds=90 * 86400, kind="window", source="24h", resolve_chain=("6h", "24h")),
        Horizon(name="1y", seconds=365 * 86400, kind="window", source="24h", resolve_chain=("24h",), strict=True),
    ]
    return {row.name: row for row in rows}


HORIZONS = _build_horizons()
SHORT_HORIZONS = tuple(h for h in HORIZONS.values() if h.kind == "short")
WINDOW_HORIZONS = tuple(h for h in HORIZONS.values() if h.kind == "window")


def align_down(ts: int, interval: int) -> int:
    return int(ts) - (int(ts) % int(interval))
