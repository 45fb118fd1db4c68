"""QR artifact rendering for presentable tokens (Phase 6)."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
from pathlib import Path
from typing import Protocol

import qrcode

from .errors import ArtifactRenderError


class QrArtifactRenderer(Protocol):
    def render(self, token: str) -> str:
        """Render `token` and return the stored artifact reference."""


@dataclass
class LocalQrArtifactRenderer(QrArtifactRenderer):
    """Write a PNG per token into `output_dir` and return its public reference."""

    output_dir: Path
    base_url: str
    box_size: int = 10
    border: int = 4

    def render(self, token: str) -> str:
        payload = str(token or "").strip()
        if not payload:
            raise ArtifactRenderError("ARTIFACT_RENDER_FAILED", "token is empty")
        # File names never embed the raw token.
        file_name = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32] + ".png"
        path = Path(self.output_dir) / file_name
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            qr = qrcode.QRCode(
                error_correction=qrcode.constants.ERROR_CORRECT_M,
                box_size=self.box_size,
                border=self.border,
            )
            qr.add_data(payload)
            qr.make(fit=True)
            image = qr.make_image()
            with path.open("wb") as handle:
                image.save(handle)
        except Exception as exc:
            raise ArtifactRenderError("ARTIFACT_RENDER_FAILED", str(exc)[:256]) from exc
        return f"{self.base_url.rstrip('/')}/{file_name}"
