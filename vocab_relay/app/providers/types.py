from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ProviderHealth:
    ok: bool
    detail: str | None = None
