"""Artifact Manager: versioned baseline bundles in a filesystem content store."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from vmpipe.constants import (
    BUNDLES_DIRNAME,
    CACHE_DIRNAME,
    LATEST_GOOD_POINTER,
    METADATA_FILENAME,
    VERSION_TAG_RE,
)
from vmpipe.exceptions import FetchError, NotFoundError, PipelineError, PublishError
from vmpipe.models import BaselineBundle, PublishedBundle
from vmpipe.utils import download_file, ensure_directory, log, run, sanitize_tag, sha256_file, utc_now

IMAGE_NAME = "disk.qcow2"
KERNEL_NAME = "vmlinuz"
INITRD_NAME = "initrd.img"


def _is_url(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


class ArtifactManager:
    def __init__(self, store_dir: Path) -> None:
        self.store_dir = store_dir
        self.bundles_dir = store_dir / BUNDLES_DIRNAME
        self.cache_dir = store_dir / CACHE_DIRNAME
        self.pointer_path = store_dir / LATEST_GOOD_POINTER

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def latest_good(self) -> Optional[str]:
        try:
            tag = self.pointer_path.read_text().strip()
        except FileNotFoundError:
            return None
        return tag or None

    def resolve_tag(self, version_tag: str) -> str:
        if version_tag == LATEST_GOOD_POINTER:
            tag = self.latest_good()
            if tag is None:
                raise NotFoundError(f"No known-good bundle recorded in {self.pointer_path}")
            log("INFO", f"Resolved {LATEST_GOOD_POINTER} -> {tag}")
            return tag
        return version_tag

    def read_metadata(self, version_tag: str) -> Dict[str, Any]:
        bundle_dir = self.bundles_dir / version_tag
        metadata_path = bundle_dir / METADATA_FILENAME
        if not bundle_dir.is_dir():
            raise NotFoundError(f"Bundle '{version_tag}' not found in {self.bundles_dir}")
        try:
            metadata = json.loads(metadata_path.read_text())
        except FileNotFoundError as exc:
            raise FetchError(f"Bundle '{version_tag}' is corrupt: {METADATA_FILENAME} missing") from exc
        except json.JSONDecodeError as exc:
            raise FetchError(f"Bundle '{version_tag}' is corrupt: {METADATA_FILENAME} is not valid JSON") from exc
        if not isinstance(metadata, dict):
            raise FetchError(f"Bundle '{version_tag}' is corrupt: {METADATA_FILENAME} must hold an object")
        return metadata

    def list_bundles(self) -> List[Dict[str, Any]]:
        if not self.bundles_dir.is_dir():
            return []
        bundles: List[Dict[str, Any]] = []
        for entry in self.bundles_dir.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                metadata = self.read_metadata(entry.name)
            except FetchError as exc:
                log("WARN", str(exc))
                continue
            bundles.append(metadata)
        bundles.sort(key=lambda m: (m.get("created_at", ""), m.get("version_tag", "")))
        return bundles

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------
    def _materialize(self, version_tag: str, bundle_dir: Path, ref: str, checksums: Dict[str, str]) -> Path:
        if _is_url(ref):
            cached = self.cache_dir / version_tag / Path(ref.split("?", 1)[0]).name
            expected = checksums.get(ref)
            if cached.is_file() and (expected is None or sha256_file(cached) == expected):
                log("INFO", f"Using cached {cached.name} for bundle {version_tag}")
                return cached
            try:
                download_file(ref, cached, label=f"Fetching {cached.name}")
            except PipelineError as exc:
                raise FetchError(str(exc)) from exc
            path = cached
        else:
            path = bundle_dir / ref
            if not path.is_file():
                raise FetchError(f"Bundle '{version_tag}' is corrupt: {ref} missing")
        expected = checksums.get(ref)
        if expected is not None:
            actual = sha256_file(path)
            if actual != expected:
                raise FetchError(
                    f"Bundle '{version_tag}' is corrupt: checksum mismatch for {ref} "
                    f"(expected {expected[:12]}..., got {actual[:12]}...)"
                )
        return path

    def fetch(self, version_tag: str) -> BaselineBundle:
        """Resolve, verify and return a baseline bundle; never mutates the store."""
        tag = self.resolve_tag(version_tag)
        if not VERSION_TAG_RE.match(tag):
            raise NotFoundError(f"Invalid version tag '{tag}'")
        metadata = self.read_metadata(tag)
        if metadata.get("partial"):
            raise FetchError(f"Bundle '{tag}' is a partial (logs-only) bundle and has no image")
        bundle_dir = self.bundles_dir / tag
        checksums = metadata.get("files") or {}

        image_ref = metadata.get("image") or IMAGE_NAME
        image = self._materialize(tag, bundle_dir, image_ref, checksums)
        boot_files: Dict[str, Optional[Path]] = {}
        for key, default in (("kernel", KERNEL_NAME), ("initrd", INITRD_NAME)):
            ref = metadata.get(key)
            if ref is None and (bundle_dir / default).is_file():
                ref = default
            boot_files[key] = self._materialize(tag, bundle_dir, ref, checksums) if ref else None

        # every listed local file is verified, not only the boot inputs
        for ref in checksums:
            if not _is_url(ref) and ref not in (image_ref, metadata.get("kernel"), metadata.get("initrd")):
                self._materialize(tag, bundle_dir, ref, checksums)

        log("SUCCESS", f"Fetched baseline bundle {tag} ({image.name})")
        return BaselineBundle(
            version_tag=tag,
            bundle_dir=bundle_dir,
            image_path=image,
            kernel_path=boot_files["kernel"],
            initrd_path=boot_files["initrd"],
            commit=str(metadata.get("commit", "")),
            pipeline_id=str(metadata.get("pipeline_id", "")),
            created_at=str(metadata.get("created_at", "")),
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------
    def allocate_tag(self, base: str) -> str:
        """Return ``base`` or ``base.N``; an existing tag is never reused."""
        base = sanitize_tag(base)
        tag = base
        suffix = 1
        while (self.bundles_dir / tag).exists():
            tag = f"{base}.{suffix}"
            suffix += 1
        return tag

    def _stage_image(self, image: Path, destination: Path, flatten: bool) -> None:
        if flatten:
            # resolves the overlay's backing chain into a standalone image
            run(["qemu-img", "convert", "-O", "qcow2", str(image), str(destination)], capture_output=True)
        else:
            shutil.copy2(image, destination)

    def _stage_boot_files(
        self,
        staging: Path,
        image: Path,
        kernel: Optional[Path],
        initrd: Optional[Path],
        flatten: bool,
    ) -> Optional[str]:
        """Copy the boot inputs into ``staging``; return an error message instead of raising."""
        try:
            self._stage_image(image, staging / IMAGE_NAME, flatten)
            if kernel is not None:
                shutil.copy2(kernel, staging / KERNEL_NAME)
            if initrd is not None:
                shutil.copy2(initrd, staging / INITRD_NAME)
            return None
        except subprocess.CalledProcessError as exc:
            message = f"Failed to flatten VM image: {(exc.stderr or '').strip() or exc}"
        except OSError as exc:
            message = f"Failed to stage VM image: {exc}"
        for name in (IMAGE_NAME, KERNEL_NAME, INITRD_NAME):
            (staging / name).unlink(missing_ok=True)
        return message

    def _write_pointer(self, tag: str) -> None:
        ensure_directory(self.store_dir)
        fd, tmp_name = tempfile.mkstemp(dir=self.store_dir, prefix=".latest-good-")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(tag + "\n")
            os.replace(tmp_name, self.pointer_path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def publish(
        self,
        image: Optional[Path],
        logs: Sequence[Path],
        diffs: Sequence[Dict[str, Any]],
        metadata: Dict[str, Any],
        base_tag: str,
        kernel: Optional[Path] = None,
        initrd: Optional[Path] = None,
        flatten: bool = True,
        update_latest: bool = False,
    ) -> PublishedBundle:
        """Write a new bundle version; a bundle without an image is partial.

        Logs and diffs are always written. The bundle is assembled in a
        hidden staging directory and renamed into place.
        """
        partial = image is None
        image_error: Optional[str] = None
        try:
            ensure_directory(self.bundles_dir)
            staging = Path(tempfile.mkdtemp(dir=self.bundles_dir, prefix=".staging-"))
        except OSError as exc:
            raise PublishError(f"Cannot create staging area in {self.bundles_dir}: {exc}") from exc

        try:
            if image is not None:
                image_error = self._stage_boot_files(staging, image, kernel, initrd, flatten)
                if image_error is not None:
                    log("WARN", f"{image_error}; publishing logs and diffs only")
                    partial = True

            logs_dir = staging / "logs"
            ensure_directory(logs_dir)
            for log_path in logs:
                if log_path.is_file():
                    shutil.copy2(log_path, logs_dir / log_path.name)

            diffs_dir = staging / "diffs"
            ensure_directory(diffs_dir)
            for index, diff in enumerate(diffs, start=1):
                name = sanitize_tag(f"{diff.get('scenario', 'scenario')}__{diff.get('operation', index)}")
                (diffs_dir / f"{index:03d}-{name}.json").write_text(json.dumps(diff, indent=2, default=str) + "\n")

            files = {
                str(path.relative_to(staging)): sha256_file(path)
                for path in sorted(staging.rglob("*"))
                if path.is_file()
            }
            tag = self.allocate_tag(base_tag)
            document = dict(metadata)
            document.update(
                {
                    "version_tag": tag,
                    "partial": partial,
                    "created_at": utc_now(),
                    "files": files,
                }
            )
            if image_error is not None:
                document["image_error"] = image_error
            if not partial:
                document["image"] = IMAGE_NAME
                if kernel is not None:
                    document["kernel"] = KERNEL_NAME
                if initrd is not None:
                    document["initrd"] = INITRD_NAME
            (staging / METADATA_FILENAME).write_text(json.dumps(document, indent=2, default=str) + "\n")

            target = self.bundles_dir / tag
            if target.exists():
                raise PublishError(f"Bundle '{tag}' appeared while publishing; refusing to overwrite")
            os.rename(staging, target)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise PublishError(f"Failed to write bundle: {exc}") from exc
        except PublishError:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        if update_latest and not partial:
            try:
                self._write_pointer(tag)
            except OSError as exc:
                raise PublishError(f"Bundle {tag} published but {LATEST_GOOD_POINTER} not updated: {exc}") from exc
            log("SUCCESS", f"{LATEST_GOOD_POINTER} -> {tag}")
        kind = "partial" if partial else "full"
        log("SUCCESS", f"Published {kind} bundle {tag} ({len(files)} file(s))")
        return PublishedBundle(
            version_tag=tag, bundle_dir=target, partial=partial, metadata=document, image_error=image_error
        )
