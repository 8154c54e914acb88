from __future__ import annotations

import re
from dataclasses import dataclass

from txflow.errors import InvalidAsset


@dataclass(frozen=True)
class Asset:
    asset_id: int
    symbol: str
    precision: int
    stakeable: bool = False


ASSETS: tuple[Asset, ...] = (
    Asset(asset_id=1, symbol="ROOT", precision=6, stakeable=True),
    Asset(asset_id=2, symbol="XRP", precision=6),
    Asset(asset_id=17508, symbol="ASTO", precision=6),
    Asset(asset_id=3172, symbol="SYLO", precision=6),
)

_BY_ID = {asset.asset_id: asset for asset in ASSETS}
_BY_SYMBOL = {asset.symbol: asset for asset in ASSETS}


def get_asset(asset_id: int) -> Asset:
    asset = _BY_ID.get(asset_id)
    if asset is None:
        raise InvalidAsset(f"Unknown asset id {asset_id}.")
    return asset


def resolve_asset(raw: str) -> Asset:
    """Resolve user input (numeric id or symbol, e.g. "1" or "root") to an asset."""
    value = (raw or "").strip()
    if value.startswith("$"):
        value = value[1:]
    if re.fullmatch(r"[0-9]+", value):
        asset = _BY_ID.get(int(value))
    else:
        asset = _BY_SYMBOL.get(value.upper())
    if asset is None:
        raise InvalidAsset(f"Unknown asset '{raw.strip() if raw else ''}'.")
    return asset


def list_assets(stakeable_only: bool = False) -> list[Asset]:
    return [asset for asset in ASSETS if asset.stakeable or not stakeable_only]
