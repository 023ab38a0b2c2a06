import hashlib
import json
import os
import shutil
import tarfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import boto3
from botocore.client import Config

from release.tools.utils import ensure_dir, get_logger
from release.types import Artifact

log = get_logger("storage")

METADATA_FILE = "metadata.json"


class ArtifactStorageError(Exception):
    """File system or upload errors while storing a bundle."""


def sha256_of(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactStore(ABC):
    """
    Destination of artifact bundles: one location per target identifier.
    """

    @abstractmethod
    def write_bundle(
        self,
        *,
        target: str,
        version: str,
        binary_path: str,
        binary_name: str,
        companions: Sequence[str],
        source_task: str,
    ) -> Artifact:
        """Store the binary with its companions and metadata."""

    @abstractmethod
    def discard(self, target: str) -> None:
        """Remove whatever was stored for `target`."""

    @property
    @abstractmethod
    def root(self) -> Path:
        """Local directory the publisher can read bundles from."""


class LocalArtifactStore(ArtifactStore):
    """
    Directory layout:

        <root>/<target>/<binary>
        <root>/<target>/LICENSE, README.md, ...
        <root>/<target>/metadata.json
        <root>/<target>/<stem>-<version>-<target>.tar.gz
    """

    def __init__(self, root: os.PathLike | str):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def write_bundle(
        self,
        *,
        target: str,
        version: str,
        binary_path: str,
        binary_name: str,
        companions: Sequence[str],
        source_task: str,
    ) -> Artifact:
        target_dir = self._root / target
        if target_dir.exists():
            raise ArtifactStorageError(f"Bundle already exists for target '{target}'")

        try:
            ensure_dir(target_dir)
            shutil.copy2(binary_path, target_dir / binary_name)
            for companion in companions:
                if not os.path.isfile(companion):
                    raise ArtifactStorageError(f"Companion file missing: {companion}")
                shutil.copy2(companion, target_dir / os.path.basename(companion))

            archive = self._make_archive(target_dir, target, version, binary_name, companions)
            checksum = sha256_of(str(archive))

            metadata_path = target_dir / METADATA_FILE
            metadata = {
                "target": target,
                "version": version,
                "binary": binary_name,
                "binary_sha256": sha256_of(str(target_dir / binary_name)),
                "archive": archive.name,
                "archive_sha256": checksum,
                "source_task": source_task,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            with metadata_path.open("w", encoding="utf-8") as f:
                json.dump(metadata, f, indent=2)

        except ArtifactStorageError:
            shutil.rmtree(target_dir, ignore_errors=True)
            raise
        except OSError as exc:
            shutil.rmtree(target_dir, ignore_errors=True)
            raise ArtifactStorageError(str(exc)) from exc

        log.info(f"Stored artifact for {target} at {target_dir}")
        return Artifact(
            target=target,
            version=version,
            binary_path=str(target_dir / binary_name),
            source_task=source_task,
            location=str(target_dir),
            archive_path=str(archive),
            checksum=checksum,
            metadata_path=str(metadata_path),
        )

    def discard(self, target: str) -> None:
        shutil.rmtree(self._root / target, ignore_errors=True)

    @staticmethod
    def _make_archive(
        target_dir: Path,
        target: str,
        version: str,
        binary_name: str,
        companions: Sequence[str],
    ) -> Path:
        stem = Path(binary_name).stem
        bundle_name = f"{stem}-{target}-{version}"
        archive = target_dir / f"{stem}-{version}-{target}.tar.gz"

        with tarfile.open(archive, "w:gz") as tar:
            tar.add(target_dir / binary_name, arcname=f"{bundle_name}/{binary_name}")
            for companion in companions:
                name = os.path.basename(companion)
                tar.add(target_dir / name, arcname=f"{bundle_name}/{name}")
        return archive


class S3ArtifactStore(ArtifactStore):
    """
    Builds the bundle locally, then mirrors it to `s3://<bucket>/<prefix>/<target>/`.
    """

    def __init__(
        self,
        *,
        bucket: str,
        staging_root: os.PathLike | str,
        prefix: str = "",
        client=None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region_name: str = "us-east-1",
    ):
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=Config(signature_version="s3v4"),
                region_name=region_name,
            )
        self.s3 = client
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._local = LocalArtifactStore(staging_root)

    @property
    def root(self) -> Path:
        return self._local.root

    def write_bundle(self, **kwargs) -> Artifact:
        artifact = self._local.write_bundle(**kwargs)
        target_dir = Path(artifact.location)
        key_prefix = "/".join(p for p in (self.prefix, artifact.target) if p)

        try:
            for path in sorted(target_dir.iterdir()):
                self.s3.upload_file(str(path), self.bucket, f"{key_prefix}/{path.name}")
        except Exception as exc:
            self.discard(artifact.target)
            raise ArtifactStorageError(f"Upload failed for {artifact.target}: {exc}") from exc

        location = f"s3://{self.bucket}/{key_prefix}/"
        log.info(f"Uploaded artifact for {artifact.target} to {location}")
        return Artifact(**{**artifact.to_dict(), "location": location})

    def discard(self, target: str) -> None:
        key_prefix = "/".join(p for p in (self.prefix, target) if p)
        target_dir = self._local.root / target
        if target_dir.is_dir():
            keys = [{"Key": f"{key_prefix}/{path.name}"} for path in target_dir.iterdir()]
            if keys:
                try:
                    self.s3.delete_objects(Bucket=self.bucket, Delete={"Objects": keys})
                except Exception as exc:
                    log.error(f"Failed to delete uploaded files for {target}: {exc}")
        self._local.discard(target)
