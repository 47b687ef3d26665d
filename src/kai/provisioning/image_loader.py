"""Loads the application image shipped inside the resources directory."""

from __future__ import annotations

import asyncio
import gzip
import json
import shutil
import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from kai.errors import KaiError
from kai.infrastructure.config import RESOURCES_DIR
from kai.infrastructure.logger import logger
from kai.provisioning.download import OnProgress
from kai.runtime.contract import ContainerRuntime

DEFAULT_ARCHIVE = "kai-backend-image.tar.gz"


class ImageManifest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    image_name: str
    file_name: str = DEFAULT_ARCHIVE
    exported_at: str | None = None
    size: str | None = None


class ImageLoader:
    def __init__(self, resources_dir: Path | None = None) -> None:
        self._resources_dir = resources_dir or RESOURCES_DIR

    @property
    def manifest_path(self) -> Path:
        return self._resources_dir / "image-manifest.json"

    def bundled_images(self) -> list[ImageManifest]:
        if not self.manifest_path.exists():
            return []
        try:
            return [ImageManifest.model_validate(json.loads(self.manifest_path.read_text()))]
        except (OSError, json.JSONDecodeError, ValidationError) as err:
            logger.warning("Unreadable image manifest", path=str(self.manifest_path), error=str(err))
            return []

    async def load_bundled(self, runtime: ContainerRuntime, on_progress: OnProgress | None = None) -> bool:
        """Load the bundled image unless the runtime already has it.

        Returns True when an image was loaded. Failures are logged, never raised.
        """
        progress = on_progress or (lambda _msg: None)

        for manifest in self.bundled_images():
            archive = self._resources_dir / manifest.file_name
            if not archive.exists():
                continue

            progress(f"Checking for bundled image: {manifest.image_name}")
            if await runtime.image_exists(manifest.image_name):
                progress(f"Image {manifest.image_name} already available")
                return False

            progress(f"Loading bundled image {manifest.image_name} ({manifest.size or 'unknown size'})...")
            try:
                await self._load(runtime, archive)
            except (KaiError, OSError) as err:
                logger.error("Failed to load bundled image", image=manifest.image_name, error=str(err))
                return False

            logger.info("Bundled image loaded", image=manifest.image_name)
            progress(f"Image {manifest.image_name} loaded successfully")
            return True

        return False

    async def _load(self, runtime: ContainerRuntime, archive: Path) -> None:
        with tempfile.TemporaryDirectory(prefix="kai-image-") as tmp:
            tar_path = Path(tmp) / "image.tar"
            await asyncio.to_thread(_gunzip, archive, tar_path)
            await runtime.load_image(tar_path)


def _gunzip(src: Path, dest: Path) -> None:
    with gzip.open(src, "rb") as fin, dest.open("wb") as fout:
        shutil.copyfileobj(fin, fout)
