# backend/videohost/manifest.py
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .models import Rendition, RenditionKind


@dataclass(frozen=True)
class Manifest:
    has_hls: bool = False
    hls_url: str = ""
    has_dash: bool = False
    dash_url: str = ""
    has_mp4: bool = False
    mp4_versions: List[str] = field(default_factory=list)


def build_manifest(renditions: Iterable[Rendition]) -> Manifest:
    """Summarise a video's renditions for the player.

    ``renditions`` must be in creation order; the newest ladder of each kind
    provides the manifest url.
    """
    hls_url: Optional[str] = None
    dash_url: Optional[str] = None
    mp4_versions: List[str] = []

    for rendition in renditions:
        if rendition.kind == RenditionKind.HLS:
            hls_url = rendition.path
        elif rendition.kind == RenditionKind.DASH:
            dash_url = rendition.path
        elif rendition.kind == RenditionKind.MP4 and rendition.path not in mp4_versions:
            mp4_versions.append(rendition.path)

    return Manifest(
        has_hls=hls_url is not None,
        hls_url=hls_url or "",
        has_dash=dash_url is not None,
        dash_url=dash_url or "",
        has_mp4=bool(mp4_versions),
        mp4_versions=mp4_versions,
    )
