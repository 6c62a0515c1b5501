"""
Hand-off of infrastructure outputs between the two workflows.

The infrastructure workflow saves ``terraform output -json`` style data to a
file and uploads it as a named artifact. The deploy workflow downloads the
latest artifact of that name produced by the infrastructure workflow and reads
it into ``InfrastructureOutputs``.
"""

import json
import logging
import shutil
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from appdeploy.errors import ArtifactNotFoundError, OutputsError

logger = logging.getLogger(__name__)

MANIFEST = "manifest.json"


@dataclass(frozen=True)
class InfrastructureOutputs:
    acr_name: str
    acr_login_server: str
    acr_id: str
    resource_group_name: str
    app_service_principal_id: str
    app_service_name: str

    @classmethod
    def from_outputs(cls, outputs: Mapping[str, Any]) -> "InfrastructureOutputs":
        values = {}
        missing = []
        for f in fields(cls):
            entry = outputs.get(f.name)
            value = entry.get("value") if isinstance(entry, dict) else None
            if value is None or value == "":
                missing.append(f.name)
            else:
                values[f.name] = str(value)
        if missing:
            raise OutputsError(f"Infrastructure outputs are missing: {', '.join(missing)}")
        return cls(**values)

    @classmethod
    def from_file(cls, path: Path) -> "InfrastructureOutputs":
        try:
            with open(path, "r") as file:
                data = json.load(file)
        except json.JSONDecodeError as e:
            raise OutputsError(f"{path} is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise OutputsError(f"{path} must contain a JSON object")
        return cls.from_outputs(data)

    @property
    def registry_url(self) -> str:
        return f"https://{self.acr_login_server}"


def write_outputs(outputs: Mapping[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as file:
        json.dump(outputs, file, indent=2, sort_keys=True)
    return path


@dataclass
class ArtifactRecord:
    workflow: str
    run_id: str
    name: str
    created_at: datetime
    retention_days: Optional[int]
    files: List[str]
    path: Path

    def expired(self, now: datetime) -> bool:
        if self.retention_days is None:
            return False
        return now >= self.created_at + timedelta(days=self.retention_days)


def _slug(text: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "-" for c in text.lower())


class ArtifactStore:
    """Artifacts on local disk, laid out as ``<root>/<workflow>/<run id>/<name>/``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def upload(
        self,
        workflow: str,
        run_id: str,
        name: str,
        files: Sequence[Path],
        retention_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ArtifactRecord:
        target = self.root / _slug(workflow) / run_id / name
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True)

        stored = []
        for source in files:
            source = Path(source)
            if not source.is_file():
                raise ArtifactNotFoundError(f"Cannot upload '{name}': {source} does not exist")
            shutil.copy2(source, target / source.name)
            stored.append(source.name)

        created_at = now or datetime.now(timezone.utc)
        manifest = {
            "workflow": workflow,
            "run_id": run_id,
            "name": name,
            "created_at": created_at.isoformat(),
            "retention_days": retention_days,
            "files": stored,
        }
        with open(target / MANIFEST, "w") as file:
            json.dump(manifest, file, indent=2)

        logger.info(f"Uploaded artifact '{name}' from {workflow} run {run_id}: {', '.join(stored)}")
        return self._record(target / MANIFEST)

    def _record(self, manifest_path: Path) -> ArtifactRecord:
        with open(manifest_path, "r") as file:
            data = json.load(file)
        return ArtifactRecord(
            workflow=data["workflow"],
            run_id=data["run_id"],
            name=data["name"],
            created_at=datetime.fromisoformat(data["created_at"]),
            retention_days=data.get("retention_days"),
            files=data["files"],
            path=manifest_path.parent,
        )

    def list(self, workflow: Optional[str] = None, name: Optional[str] = None) -> List[ArtifactRecord]:
        base = self.root / _slug(workflow) if workflow else self.root
        if not base.exists():
            return []
        records = [self._record(p) for p in base.glob(f"**/{MANIFEST}")]
        if name:
            records = [r for r in records if r.name == name]
        return sorted(records, key=lambda r: r.created_at)

    def find(self, name: str, workflow: str, run_id: Optional[str] = None, now: Optional[datetime] = None) -> ArtifactRecord:
        now = now or datetime.now(timezone.utc)
        candidates = [
            r for r in self.list(workflow, name)
            if not r.expired(now) and (run_id is None or r.run_id == run_id)
        ]
        if not candidates:
            raise ArtifactNotFoundError(f"No artifact '{name}' produced by workflow '{workflow}'")
        return candidates[-1]

    def download(
        self,
        name: str,
        workflow: str,
        dest: Path,
        run_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Path]:
        record = self.find(name, workflow, run_id, now)
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        copied = []
        for file_name in record.files:
            copied.append(Path(shutil.copy2(record.path / file_name, dest / file_name)))
        logger.info(f"Downloaded artifact '{name}' from {workflow} run {record.run_id} to {dest}")
        return copied

    def prune(self, now: Optional[datetime] = None) -> List[ArtifactRecord]:
        now = now or datetime.now(timezone.utc)
        removed = []
        for record in self.list():
            if record.expired(now):
                shutil.rmtree(record.path)
                removed.append(record)
                logger.info(f"Pruned expired artifact '{record.name}' from run {record.run_id}")
        return removed


def outputs_summary(outputs: InfrastructureOutputs) -> Dict[str, str]:
    return {f.name: getattr(outputs, f.name) for f in fields(outputs)}
