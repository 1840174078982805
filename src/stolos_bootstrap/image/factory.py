# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/image/factory.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

import requests
import yaml

from stolos_bootstrap.config.models import ClusterParameters
from stolos_bootstrap.errors import ImageFactoryError
from stolos_bootstrap.utils.retry import RetryError, retry

log = logging.getLogger("stolos")

_TRANSIENT = (requests.ConnectionError, requests.Timeout)


def config_kernel_arg(host: str, port: int) -> str:
    # ${mac} and ${uuid} are expanded by the booting machine, not by us
    return f"talos.config=http://{host}:{port}/machineconfig?m=${{mac}}&u=${{uuid}}"


def build_schematic(params: ClusterParameters) -> Dict[str, Any]:
    """Image factory schematic pointing booted machines at the issuance server."""
    schematic: Dict[str, Any] = {
        "customization": {
            "extraKernelArgs": [
                config_kernel_arg(params.http_hostname, params.http_port),
                *params.extra_kernel_args(),
            ],
        },
    }
    if params.talos_overlay_image and params.talos_overlay_name:
        schematic["overlay"] = {
            "image": params.talos_overlay_image,
            "name": params.talos_overlay_name,
        }
    return schematic


def image_filename(arch: str) -> str:
    # arm64 boards boot from raw disk images, everything else from an ISO
    ext = "raw.xz" if arch == "arm64" else "iso"
    return f"metal-{arch}.{ext}"


class ImageFactoryClient:
    """
    Minimal Talos image factory client:
      - register a schematic (idempotent, the factory returns a content hash)
      - download the boot image for that schematic
    """

    def __init__(self, *, base_url: str = "https://factory.talos.dev", timeout: int = 600):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def image_url(self, schematic_id: str, version: str, arch: str) -> str:
        return f"{self.base_url}/image/{schematic_id}/{version}/{image_filename(arch)}"

    @retry(retries=3, delay=2, backoff=2, retry_on=_TRANSIENT)
    def _post_schematic(self, body: str) -> requests.Response:
        return requests.post(f"{self.base_url}/schematics", data=body.encode(), timeout=30)

    def create_schematic(self, schematic: Dict[str, Any]) -> str:
        try:
            r = self._post_schematic(yaml.safe_dump(schematic, sort_keys=False))
        except RetryError as exc:
            raise ImageFactoryError(f"image factory unreachable: {exc.__cause__}") from exc
        if r.status_code not in (200, 201):
            raise ImageFactoryError(f"schematic creation failed: {r.status_code} {r.text}")
        schematic_id = r.json().get("id")
        if not schematic_id:
            raise ImageFactoryError(f"schematic response has no id: {r.text}")
        log.info("Image factory schematic %s", schematic_id)
        return schematic_id

    def download(self, url: str, dest: Path, chunk_size: int = 1 << 20) -> Path:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")
        log.info("Downloading %s -> %s", url, dest)
        try:
            with requests.get(url, stream=True, timeout=self.timeout) as r:
                if r.status_code != 200:
                    raise ImageFactoryError(f"image download failed: {r.status_code} {url}")
                with partial.open("wb") as f:
                    for chunk in r.iter_content(chunk_size=chunk_size):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as exc:
            partial.unlink(missing_ok=True)
            raise ImageFactoryError(f"image download failed: {exc}") from exc
        except ImageFactoryError:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(dest)
        return dest

    def build_image(self, params: ClusterParameters, output_dir: Path) -> Path:
        """Create the schematic and download the image unless it is already on disk."""
        schematic_id = self.create_schematic(build_schematic(params))
        dest = Path(output_dir) / f"talos-{params.talos_version}-{schematic_id[:12]}-{image_filename(params.talos_architecture)}"
        if dest.is_file():
            log.info("Talos image already present at %s", dest)
            return dest
        return self.download(self.image_url(schematic_id, params.talos_version, params.talos_architecture), dest)
