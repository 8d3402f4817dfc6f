from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class BackupRun:
    """One execution of the backup pipeline for a project/dataset pair."""
    project_id: str
    dataset: str
    timestamp: str
    work_dir: Optional[str] = None
    archive_path: Optional[str] = None
    checksum: Optional[str] = None
    object_key: Optional[str] = None
    size_bytes: Optional[int] = None
    status: str = 'running'
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    duration_seconds: Optional[int] = None
    assets: Optional['AssetSummary'] = None
    deleted_keys: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def __repr__(self):
        return f'<BackupRun {self.project_id}/{self.dataset} {self.timestamp} {self.status}>'


@dataclass(frozen=True)
class AssetReference:
    """An asset referenced from an exported document."""
    kind: str  # 'image' or 'file'
    asset_id: str
    extension: str
    dimensions: Optional[str] = None  # 'WxH', images only

    @property
    def filename(self) -> str:
        if self.dimensions:
            return f"{self.asset_id}-{self.dimensions}.{self.extension}"
        return f"{self.asset_id}.{self.extension}"

    def url(self, project_id: str, dataset: str, cdn_host: str = 'cdn.sanity.io') -> str:
        folder = 'images' if self.kind == 'image' else 'files'
        return f"https://{cdn_host}/{folder}/{project_id}/{dataset}/{self.filename}"


@dataclass
class AssetDownloadResult:
    """Outcome of a single asset download."""
    url: str
    path: Optional[str] = None
    size_bytes: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AssetSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: List[AssetDownloadResult] = field(default_factory=list)

    def add(self, result: AssetDownloadResult):
        self.total += 1
        if result.ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.failures.append(result)


@dataclass
class ExportResult:
    """What the exporter left in the output directory."""
    documents_path: str
    document_count: int
    size_bytes: int
    assets_dir: Optional[str] = None
    assets: AssetSummary = field(default_factory=AssetSummary)


@dataclass(frozen=True)
class ChecksumRecord:
    digest: str
    algorithm: str
    filename: str
    path: Optional[str] = None


@dataclass(frozen=True)
class RemoteBackupEntry:
    """A backup archive as seen in a storage listing."""
    key: str
    size: int
    last_modified: datetime


@dataclass
class RetentionDecision:
    keep: List[RemoteBackupEntry] = field(default_factory=list)
    delete: List[RemoteBackupEntry] = field(default_factory=list)
    delete_keys: List[str] = field(default_factory=list)


@dataclass
class Notification:
    """Terminal status of a run, as sent to the chat channel."""
    status: str  # 'success' or 'failure'
    project_id: str
    dataset: str
    backup_size: Optional[str] = None
    object_key: Optional[str] = None
    duration: Optional[int] = None
    error: Optional[str] = None
