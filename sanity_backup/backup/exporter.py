"""
Dataset export from the Sanity HTTP API.

The exporter streams the dataset's documents as NDJSON into
``<output>/data.ndjson`` and, optionally, downloads every asset the documents
reference into ``<output>/assets/``.

Document export is all-or-nothing. Asset downloads are best effort: assets
live at permanent content-addressed URLs, so a partial asset set is logged
and counted but does not fail the export.
"""

import os
import re
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Iterator, List, Optional, Set

import requests

from sanity_backup.errors import BackupError, TransportError, EmptyResultError
from sanity_backup.models import AssetReference, AssetDownloadResult, AssetSummary, ExportResult
from sanity_backup.utils.redaction import sanitize

logger = logging.getLogger(__name__)

DOCUMENTS_FILENAME = 'data.ndjson'
ASSETS_DIRNAME = 'assets'
DRAFT_PREFIX = 'drafts.'

_IMAGE_REF = re.compile(r'^image-([a-f0-9]+)-(\d+x\d+)-([a-z0-9]+)$', re.IGNORECASE)
_FILE_REF = re.compile(r'^file-([a-f0-9]+)-([a-z0-9]+)$', re.IGNORECASE)


class ExportError(BackupError):
    """Raised when dataset export fails."""
    pass


class ExportTransportError(ExportError, TransportError):
    """The export endpoint failed or returned a non-success status."""
    pass


class EmptyExportError(ExportError, EmptyResultError):
    """The export reported success but wrote no documents."""
    pass


def parse_asset_ref(ref: Any) -> Optional[AssetReference]:
    """
    Parse an asset reference string.

    Recognized forms are ``image-<hash>-<W>x<H>-<format>`` and
    ``file-<hash>-<extension>``. Anything else is not an asset.
    """
    if not isinstance(ref, str):
        return None

    match = _IMAGE_REF.match(ref)
    if match:
        asset_id, dimensions, extension = match.groups()
        return AssetReference('image', asset_id, extension, dimensions)

    match = _FILE_REF.match(ref)
    if match:
        asset_id, extension = match.groups()
        return AssetReference('file', asset_id, extension)

    return None


def find_asset_refs(node: Any) -> Iterator[AssetReference]:
    """
    Walk a decoded document and yield every asset reference in it.

    Objects of the form ``{"_type": "reference", "_ref": ...}`` whose ref
    parses as an asset are yielded; all other objects and arrays are
    descended into; scalars are ignored.
    """
    if isinstance(node, dict):
        if node.get('_type') == 'reference':
            asset = parse_asset_ref(node.get('_ref'))
            if asset is not None:
                yield asset
                return
        for value in node.values():
            yield from find_asset_refs(value)
    elif isinstance(node, list):
        for item in node:
            yield from find_asset_refs(item)


class SanityExporter:
    """
    Exports a Sanity dataset over the HTTP export API.
    """

    def __init__(
        self,
        project_id: str,
        dataset: str,
        token: str,
        session: Optional[requests.Session] = None,
        api_version: str = 'v2021-06-07',
        api_host: str = 'api.sanity.io',
        cdn_host: str = 'cdn.sanity.io',
        timeout: int = 60
    ):
        """
        Initialize the exporter.

        Args:
            project_id: Sanity project ID
            dataset: Dataset name
            token: API token with read access to the dataset
            session: Optional requests session (one is created otherwise)
            api_version: Dated API version, e.g. v2021-06-07
            api_host: API host
            cdn_host: Asset CDN host
            timeout: Connect/read timeout in seconds for every request
        """
        self.project_id = project_id
        self.dataset = dataset
        self.token = token
        self.session = session or requests.Session()
        self.api_version = api_version
        self.api_host = api_host
        self.cdn_host = cdn_host
        self.timeout = timeout

    @property
    def export_url(self) -> str:
        return f"https://{self.project_id}.{self.api_host}/{self.api_version}/data/export/{self.dataset}"

    def _headers(self) -> dict:
        return {'Authorization': f'Bearer {self.token}'}

    def _clean(self, text: str) -> str:
        return sanitize(text, [self.token])

    def export(
        self,
        output_dir: str,
        include_drafts: bool = True,
        include_assets: bool = True,
        asset_concurrency: int = 6
    ) -> ExportResult:
        """
        Export documents (and optionally assets) into output_dir.

        Args:
            output_dir: Directory to write into (created if missing)
            include_drafts: Keep documents whose ID starts with 'drafts.'
            include_assets: Download referenced assets
            asset_concurrency: Number of downloads per batch

        Returns:
            ExportResult describing the written files

        Raises:
            ExportTransportError: If the export request fails
            EmptyExportError: If no document bytes were written
        """
        output = Path(output_dir)
        output.mkdir(parents=True, exist_ok=True)
        documents_path = output / DOCUMENTS_FILENAME

        logger.info(f"Starting Sanity export for {self.project_id}/{self.dataset}")

        asset_refs: Set[AssetReference] = set()
        document_count = self._export_documents(documents_path, include_drafts, include_assets, asset_refs)

        size = documents_path.stat().st_size
        if size == 0:
            raise EmptyExportError(
                f"Export of {self.project_id}/{self.dataset} produced an empty {DOCUMENTS_FILENAME}"
            )

        logger.info(
            f"Exported {document_count} documents ({size / 1024 / 1024:.2f} MB) "
            f"from {self.project_id}/{self.dataset}"
        )

        result = ExportResult(
            documents_path=str(documents_path),
            document_count=document_count,
            size_bytes=size
        )

        if include_assets:
            assets_dir = output / ASSETS_DIRNAME
            assets_dir.mkdir(exist_ok=True)
            result.assets_dir = str(assets_dir)
            result.assets = self.download_assets(sorted(asset_refs, key=lambda a: a.filename), str(assets_dir), asset_concurrency)
        else:
            logger.info("Asset export disabled, skipping asset downloads")

        return result

    def _export_documents(self, documents_path: Path, include_drafts: bool, include_assets: bool, asset_refs: Set[AssetReference]) -> int:
        """Stream the export endpoint into documents_path line by line."""
        count = 0
        skipped_drafts = 0

        try:
            with self.session.get(self.export_url, headers=self._headers(), stream=True, timeout=self.timeout) as response:
                if not 200 <= response.status_code < 300:
                    body = response.text[:500]
                    raise ExportTransportError(
                        f"Sanity export of {self.project_id}/{self.dataset} failed "
                        f"with HTTP {response.status_code}: {self._clean(body)}"
                    )

                with open(documents_path, 'wb') as f:
                    for line in response.iter_lines():
                        if not line or not line.strip():
                            continue

                        if not include_drafts or include_assets:
                            document = self._decode(line)
                            if document is not None:
                                if not include_drafts and str(document.get('_id', '')).startswith(DRAFT_PREFIX):
                                    skipped_drafts += 1
                                    continue
                                if include_assets:
                                    asset_refs.update(find_asset_refs(document))

                        f.write(line)
                        f.write(b'\n')
                        count += 1

        except requests.RequestException as e:
            raise ExportTransportError(
                f"Sanity export of {self.project_id}/{self.dataset} failed: {self._clean(str(e))}"
            )

        if skipped_drafts:
            logger.info(f"Skipped {skipped_drafts} draft documents")
        return count

    def _decode(self, line: bytes) -> Optional[dict]:
        try:
            document = json.loads(line)
        except ValueError:
            logger.debug("Export line is not valid JSON, writing it unchanged")
            return None
        return document if isinstance(document, dict) else None

    def download_assets(self, assets: List[AssetReference], assets_dir: str, concurrency: int = 6) -> AssetSummary:
        """
        Download assets in bounded batches.

        Up to `concurrency` downloads run at once; each batch is awaited in
        full before the next one starts. Individual failures are recorded in
        the returned summary and never raised.
        """
        summary = AssetSummary()
        if not assets:
            logger.info("No asset references found")
            return summary

        concurrency = max(1, concurrency)
        logger.info(f"Downloading {len(assets)} assets (concurrency: {concurrency})")

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix='asset') as pool:
            for start in range(0, len(assets), concurrency):
                batch = assets[start:start + concurrency]
                futures = [pool.submit(self._download_asset, asset, assets_dir) for asset in batch]
                for future in futures:
                    summary.add(future.result())

        for failure in summary.failures:
            logger.warning(f"Failed to download asset {failure.url}: {failure.error}")

        if summary.failed:
            logger.warning(f"Downloaded {summary.succeeded}/{summary.total} assets ({summary.failed} failed)")
        else:
            logger.info(f"Downloaded {summary.succeeded}/{summary.total} assets")

        return summary

    def _download_asset(self, asset: AssetReference, assets_dir: str) -> AssetDownloadResult:
        url = asset.url(self.project_id, self.dataset, self.cdn_host)
        dest_path = os.path.join(assets_dir, asset.filename)
        written = 0

        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(dest_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            f.write(chunk)
                            written += len(chunk)
        except (requests.RequestException, OSError) as e:
            if os.path.exists(dest_path):
                os.remove(dest_path)
            return AssetDownloadResult(url=url, error=self._clean(str(e)))

        return AssetDownloadResult(url=url, path=dest_path, size_bytes=written)

    def validate_credentials(self) -> bool:
        """
        Check that the token can see the project and that the dataset exists.

        Never raises; any failure is logged and reported as False.
        """
        url = f"https://{self.project_id}.{self.api_host}/{self.api_version}/datasets"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
            if response.status_code != 200:
                logger.error(f"Sanity credentials validation failed (HTTP {response.status_code})")
                return False
            datasets = [d.get('name') for d in response.json() if isinstance(d, dict)]
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Sanity credentials validation failed: {self._clean(str(e))}")
            return False

        if self.dataset not in datasets:
            logger.error(f"Dataset {self.dataset} not found in project {self.project_id}")
            return False

        logger.info("Sanity credentials validated successfully")
        return True


def create_exporter(settings, session: Optional[requests.Session] = None) -> SanityExporter:
    """
    Factory function to create the dataset exporter from Settings.

    Args:
        settings: Settings instance
        session: Optional shared requests session

    Returns:
        SanityExporter instance
    """
    return SanityExporter(
        project_id=settings.backup.project_id,
        dataset=settings.backup.dataset,
        token=settings.source_token,
        session=session,
        api_version=settings.backup.api_version
    )
