"""
export_sink.py

Turns extracted records into downloadable workbooks.

    separate mode   one <basename>.xlsx per job, written as soon as the job ends
    combine mode    CombinedCollector gathers every job's records; one
                    combined.xlsx is written after the queue drains

Workbooks are stored in the `exports` table and served by
GET /exports/{export_id}/download. A failure to build or store raises
ExportError; the caller records it on the job and leaves credit
bookkeeping untouched.
"""

import asyncio
import logging
import uuid

from _db import db_save_export
from errors import ExportError
from excel_writer import COMBINED_FILENAME, build_excel, export_filename
from scan_job import ScanJob

logger = logging.getLogger(__name__)


class ExportSink:
    def __init__(self, save=db_save_export) -> None:
        self._save = save

    async def export(self, filename: str, records: list[dict], include_source: bool = False) -> str:
        """Build and persist one workbook. Returns its export_id."""
        export_id = str(uuid.uuid4())
        try:
            xlsx = await asyncio.to_thread(build_excel, records, include_source)
            await asyncio.to_thread(self._save, export_id, filename, len(records), xlsx)
        except Exception as exc:
            raise ExportError(f"Could not export '{filename}': {exc}") from exc
        logger.info(f"[{filename}] Exported {len(records)} record(s) as {export_id}.")
        return export_id

    async def export_combined(self, items: list[tuple[str, list[dict]]]) -> str:
        """One workbook for every (source filename, records) pair, in order."""
        rows: list[dict] = []
        for source, records in items:
            for record in records:
                row = dict(record)
                row.setdefault("source_file", source)
                rows.append(row)
        return await self.export(COMBINED_FILENAME, rows, include_source=True)

    async def export_job(self, job: ScanJob) -> str:
        return await self.export(export_filename(job.original_name), job.flatten_records())


class CombinedCollector:
    """
    Exporter used by the runner in combine mode: records are held until
    the controller decides whether a combined export happens.
    """

    def __init__(self) -> None:
        self.jobs: list[ScanJob] = []

    async def export_job(self, job: ScanJob) -> None:
        if job not in self.jobs:
            self.jobs.append(job)
        return None

    def items(self) -> list[tuple[str, list[dict]]]:
        return [(job.original_name, job.flatten_records()) for job in self.jobs]

    def record_count(self) -> int:
        return sum(len(records) for _, records in self.items())
