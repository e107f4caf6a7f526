"""Catalogue of overlay assets, loaded once at startup and read-only after."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

import cv2
import numpy as np

from .errors import AssetLoadError, AssetNotFoundError
from .models import OverlayAsset

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".webp", ".tif", ".tiff"}

ORIENTATION_TOLERANCE = 0.05
ORIENTATIONS = ("portrait", "landscape", "any")


def orientation_of(width: int, height: int) -> str:
    """Portrait only when clearly taller than wide; square photos count as landscape."""
    return "portrait" if height / width > 1.0 + ORIENTATION_TOLERANCE else "landscape"


def _to_bgra(raster: np.ndarray) -> np.ndarray:
    if raster.dtype == np.uint16:
        raster = (raster >> 8).astype(np.uint8)
    if raster.ndim == 2:
        return cv2.cvtColor(raster, cv2.COLOR_GRAY2BGRA)
    if raster.shape[2] == 3:
        return cv2.cvtColor(raster, cv2.COLOR_BGR2BGRA)
    if raster.shape[2] == 4:
        return raster
    raise AssetLoadError(f"Unsupported asset channel count: {raster.shape[2]}")


def _read_sidecar(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise AssetLoadError(f"Unreadable asset descriptor {path}: {e}") from e
    if not isinstance(data, dict):
        raise AssetLoadError(f"Asset descriptor {path} must be a JSON object")
    return data


def load_asset(image_path: Path) -> OverlayAsset:
    """
    Decode one asset and merge it with its ``<stem>.json`` sidecar.

    Sidecar keys (all optional): ``id``, ``group``, ``orientation``,
    ``anchor_point`` ([x, y] in asset pixels), ``anchor_scale_hint``,
    ``reference_width``, ``reference_height``. Without a sidecar the asset is
    anchored at its bottom centre and spans its full width, which is how a
    point-of-view overlay sits on a photo.
    """
    raster = cv2.imread(str(image_path), cv2.IMREAD_UNCHANGED)
    if raster is None:
        raise AssetLoadError(f"Failed to decode overlay asset {image_path}")
    raster = _to_bgra(raster)
    height, width = raster.shape[:2]

    meta = _read_sidecar(image_path.with_suffix(".json"))
    ref_w = int(meta.get("reference_width", width))
    ref_h = int(meta.get("reference_height", height))
    if (ref_w, ref_h) != (width, height):
        raise AssetLoadError(
            f"{image_path.name} is {width}x{height} but its descriptor declares {ref_w}x{ref_h}"
        )

    orientation = meta.get("orientation", "any")
    if orientation not in ORIENTATIONS:
        raise AssetLoadError(f"{image_path.name}: unknown orientation {orientation!r}")

    anchor = meta.get("anchor_point", [width / 2.0, float(height)])
    try:
        return OverlayAsset(
            id=str(meta.get("id", image_path.stem)),
            raster=raster,
            reference_width=ref_w,
            reference_height=ref_h,
            anchor_point=(float(anchor[0]), float(anchor[1])),
            anchor_scale_hint=float(meta.get("anchor_scale_hint", width)),
            group=meta.get("group"),
            orientation=orientation,
        )
    except (ValueError, TypeError, IndexError) as e:
        raise AssetLoadError(f"Invalid descriptor for {image_path.name}: {e}") from e


class AssetRegistry:
    """
    Immutable id -> OverlayAsset map.

    Ids may also name a group of orientation variants (``hands`` for
    ``hands_portrait`` and ``hands_landscape``); ``resolve`` picks the variant
    once the photo's dimensions are known.
    """

    def __init__(self, assets: Iterable[OverlayAsset] = ()):
        by_id: Dict[str, OverlayAsset] = {}
        groups: Dict[str, List[OverlayAsset]] = {}
        for asset in assets:
            if asset.id in by_id:
                raise AssetLoadError(f"Duplicate overlay asset id {asset.id!r}")
            by_id[asset.id] = asset
            if asset.group:
                groups.setdefault(asset.group, []).append(asset)
        self._assets: Mapping[str, OverlayAsset] = MappingProxyType(by_id)
        self._groups: Mapping[str, tuple] = MappingProxyType(
            {name: tuple(sorted(members, key=lambda a: a.id)) for name, members in groups.items()}
        )

    @classmethod
    def load_all(cls, directory: Union[str, Path]) -> "AssetRegistry":
        root = Path(directory)
        if not root.is_dir():
            raise AssetLoadError(f"Asset directory {root} does not exist")

        assets = [load_asset(p) for p in sorted(root.iterdir()) if p.suffix.lower() in IMAGE_SUFFIXES]
        for sidecar in sorted(root.glob("*.json")):
            if not any(sidecar.with_suffix(s).exists() for s in IMAGE_SUFFIXES):
                logger.warning("Asset descriptor %s has no matching image, skipping", sidecar.name)

        if not assets:
            logger.warning("No overlay assets found in %s", root)
        registry = cls(assets)
        logger.info("Loaded %d overlay assets from %s: %s", len(registry), root, ", ".join(registry.ids()))
        return registry

    def __len__(self) -> int:
        return len(self._assets)

    def __iter__(self) -> Iterator[OverlayAsset]:
        return iter(self._assets.values())

    def ids(self) -> List[str]:
        return sorted(self._assets)

    def __contains__(self, asset_id: str) -> bool:
        return asset_id in self._assets or asset_id in self._groups

    def get(self, asset_id: str) -> OverlayAsset:
        try:
            return self._assets[asset_id]
        except KeyError:
            raise AssetNotFoundError(asset_id) from None

    def resolve(self, asset_id: str, width: int, height: int) -> OverlayAsset:
        if asset_id in self._assets:
            return self._assets[asset_id]
        variants = self._groups.get(asset_id)
        if not variants:
            raise AssetNotFoundError(asset_id)

        wanted = orientation_of(width, height)
        chosen: Optional[OverlayAsset] = None
        for orientation in (wanted, "any"):
            chosen = next((a for a in variants if a.orientation == orientation), None)
            if chosen is not None:
                break
        return chosen or variants[0]
