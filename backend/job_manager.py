"""
Sync and import job orchestration.

Jobs are durable rows (SyncJob, ImportJob) driven through a one-way state
machine by asyncio tasks that outlive the request that created them. A
JobRegistry tracks the running tasks and, per target, the single job allowed
to be active on it; the same index guards manual edits against a target
while a job holds it.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from fastapi import Request
from sqlalchemy.orm import Session

from channel_diff import reconcile
from channel_mappings import ChannelMapping, carry_forward, copy_mappings
from config import Settings, get_settings
from database import get_session
from identifier_resolver import IdentifierStrategy, MetadataKey, extract
from lineup_store import CATCH_ALL_CATEGORY, get_lineup_entries, lineup_by_name, renumber_file, resolve_lineup_source
from models import Category, Channel, ChannelLineup, EpgFile, ImportJob, Playlist, SyncJob
from sort_order import apply_updates, assign_for_category_order
from source_adapter import SourceAdapter, SourceDescriptor
from source_records import CategoryHint, ParsedSource
from sync_errors import ConflictError, InvalidTransitionError, StuckJobError, SyncError, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums & state machine
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


NON_TERMINAL_STATUSES = [s.value for s in JobStatus if not s.is_terminal]

_FORWARD_ORDER = [
    JobStatus.PENDING,
    JobStatus.DOWNLOADING,
    JobStatus.PARSING,
    JobStatus.IMPORTING,
    JobStatus.COMPLETED,
]


class TargetKind(str, Enum):
    PLAYLIST = "playlist"
    EPG_FILE = "epgFile"


JOB_SYNC = "sync"
JOB_IMPORT = "import"

IMPORT_TYPE_JSON = "json_import"
IMPORT_TYPE_COPY = "mapping_copy"

# (job type, job id)
JobRef = Tuple[str, int]


def transition(job, status: JobStatus, progress: Optional[int] = None, message: Optional[str] = None) -> None:
    """Move a job row forward to ``status``.

    Phases may be skipped, never revisited. ``failed`` is reachable from any
    non-terminal state.

    Raises:
        InvalidTransitionError: If the job is terminal or ``status`` is not ahead of it.
    """
    current = JobStatus(job.status)
    if current.is_terminal:
        raise InvalidTransitionError(
            f"Job {job.id} is already {current.value}"
        )
    if status is not JobStatus.FAILED and _FORWARD_ORDER.index(status) <= _FORWARD_ORDER.index(current):
        raise InvalidTransitionError(
            f"Cannot move job {job.id} from {current.value} to {status.value}"
        )
    job.status = status.value
    if progress is not None:
        job.progress = max(job.progress or 0, min(100, int(progress)))
    if message is not None:
        job.message = message
    job.updated_at = datetime.utcnow()
    if status.is_terminal:
        job.completed_at = job.updated_at


def report_progress(job, progress: int, message: Optional[str] = None) -> None:
    """Advance progress without changing phase. Progress never goes down."""
    if JobStatus(job.status).is_terminal:
        raise InvalidTransitionError(f"Job {job.id} is already {job.status}")
    job.progress = max(job.progress or 0, min(100, int(progress)))
    if message is not None:
        job.message = message
    job.updated_at = datetime.utcnow()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class JobRegistry:
    """In-process index of running job tasks and of the active job per target."""

    def __init__(self) -> None:
        self._tasks: Dict[JobRef, asyncio.Task] = {}
        self._active: Dict[Tuple[str, int], JobRef] = {}

    def active_for(self, target_kind: str, target_id: int) -> Optional[JobRef]:
        return self._active.get((target_kind, target_id))

    def claim(self, target_kind: str, target_id: int, ref: JobRef) -> None:
        """Mark ``ref`` as the active job of a target.

        Raises:
            ConflictError: If another job already holds the target.
        """
        holder = self._active.get((target_kind, target_id))
        if holder is not None and holder != ref:
            raise ConflictError(target_kind, target_id, holder[1])
        self._active[(target_kind, target_id)] = ref

    def release(self, target_kind: str, target_id: int, ref: Optional[JobRef] = None) -> None:
        """Clear a target's active job. With ``ref`` given, only if that job still holds it."""
        key = (target_kind, target_id)
        if ref is None or self._active.get(key) == ref:
            self._active.pop(key, None)

    def track(self, ref: JobRef, task: asyncio.Task) -> None:
        self._tasks[ref] = task
        task.add_done_callback(lambda _t: self._tasks.pop(ref, None))

    def task_for(self, ref: JobRef) -> Optional[asyncio.Task]:
        return self._tasks.get(ref)

    def running_count(self) -> int:
        return len(self._tasks)


# ---------------------------------------------------------------------------
# JobManager
# ---------------------------------------------------------------------------

class JobManager:
    """Admits, runs and reaps sync and import jobs."""

    def __init__(
        self,
        adapter: Optional[SourceAdapter] = None,
        registry: Optional[JobRegistry] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.adapter = adapter or SourceAdapter(self.settings)
        self.registry = registry or JobRegistry()
        self._session_factory = session_factory or get_session

    # -- admission ----------------------------------------------------------

    def _active_job_in_db(self, session: Session, target_kind: str, target_id: int) -> Optional[JobRef]:
        job = session.query(SyncJob).filter(
            SyncJob.target_kind == target_kind,
            SyncJob.target_id == target_id,
            SyncJob.status.in_(NON_TERMINAL_STATUSES),
        ).first()
        if job is not None:
            return (JOB_SYNC, job.id)
        if target_kind == TargetKind.PLAYLIST.value:
            job = session.query(ImportJob).filter(
                ImportJob.playlist_id == target_id,
                ImportJob.status.in_(NON_TERMINAL_STATUSES),
            ).first()
            if job is not None:
                return (JOB_IMPORT, job.id)
        return None

    def ensure_target_idle(self, session: Session, target_kind: str, target_id: int) -> None:
        """Reject work on a target that has a non-terminal job.

        Raises:
            ConflictError: If a job is active for the target.
        """
        holder = self.registry.active_for(target_kind, target_id)
        if holder is None:
            holder = self._active_job_in_db(session, target_kind, target_id)
        if holder is not None:
            raise ConflictError(target_kind, target_id, holder[1])

    def _launch(self, ref: JobRef, target_kind: str, target_id: int, runner) -> None:
        self.registry.claim(target_kind, target_id, ref)
        task = asyncio.create_task(self._run_guarded(ref, target_kind, target_id, runner))
        self.registry.track(ref, task)

    async def _run_guarded(self, ref: JobRef, target_kind: str, target_id: int, runner) -> None:
        try:
            await runner(ref[1])
        except (SyncError, LookupError) as e:
            logger.error("[JOBS] %s job %s failed: %s", ref[0], ref[1], e)
            self._fail(ref, e)
        except Exception as e:
            logger.exception("[JOBS] %s job %s failed: %s", ref[0], ref[1], e)
            self._fail(ref, e)
        finally:
            self.registry.release(target_kind, target_id, ref)

    async def wait_for(self, ref: JobRef) -> None:
        """Wait until a job's task finishes (no-op if it is not running here)."""
        task = self.registry.task_for(ref)
        if task is not None:
            await task

    # -- public entry points ------------------------------------------------

    def start_sync(self, target_kind: str, target_id: int, category_ids: Optional[Sequence[str]] = None) -> int:
        """Create a sync job for a playlist or EPG file and start it in the background.

        Args:
            target_kind: "playlist" or "epgFile".
            target_id: Playlist or EpgFile id.
            category_ids: Provider-API categories to sync. When given they
                become the playlist's stored selection.

        Returns:
            The new SyncJob id.

        Raises:
            LookupError: If the target does not exist.
            ConflictError: If a job is already active for the target.
            ValidationError: If category ids are given for a non-playlist target.
        """
        target_kind = TargetKind(target_kind).value
        session = self._session_factory()
        try:
            if target_kind == TargetKind.PLAYLIST.value:
                target = session.query(Playlist).filter(Playlist.id == target_id).first()
            else:
                target = session.query(EpgFile).filter(EpgFile.id == target_id).first()
            if target is None:
                raise LookupError(f"{target_kind} {target_id} not found")

            self.ensure_target_idle(session, target_kind, target_id)

            filters: List[str] = []
            if category_ids is not None:
                if target_kind != TargetKind.PLAYLIST.value:
                    raise ValidationError("Category selection only applies to playlists")
                filters = [str(c) for c in category_ids]
                store_category_selection(session, target_id, filters)
            elif target_kind == TargetKind.PLAYLIST.value:
                filters = [
                    c.category_id for c in session.query(Category).filter(
                        Category.playlist_id == target_id,
                        Category.is_selected.is_(True),
                    ).all()
                ]

            job = SyncJob(
                target_kind=target_kind,
                target_id=target_id,
                status=JobStatus.PENDING.value,
                progress=0,
                message="Waiting to start",
                category_filters=json.dumps(filters) if filters else None,
            )
            session.add(job)
            session.commit()
            job_id = job.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("[SYNC-JOB] Created job %s for %s %s", job_id, target_kind, target_id)
        self._launch((JOB_SYNC, job_id), target_kind, target_id, self._run_sync)
        return job_id

    def start_import(self, playlist_id: int, entries: List[dict]) -> int:
        """Create a JSON mapping import job for a playlist.

        Raises:
            LookupError: If the playlist does not exist.
            ConflictError: If a job is already active for the playlist.
        """
        return self._create_import_job(
            playlist_id,
            job_type=IMPORT_TYPE_JSON,
            import_data=json.dumps(entries),
            total=len(entries),
        )

    def start_mapping_copy(self, target_playlist_id: int, source_playlist_id: int) -> int:
        """Create a job copying mappings from one playlist onto another.

        Raises:
            LookupError: If either playlist does not exist.
            ConflictError: If a job is already active for the target playlist.
            ValidationError: If source and target are the same playlist.
        """
        if target_playlist_id == source_playlist_id:
            raise ValidationError("Source and target playlist must differ")
        return self._create_import_job(
            target_playlist_id,
            job_type=IMPORT_TYPE_COPY,
            source_playlist_id=source_playlist_id,
        )

    def _create_import_job(self, playlist_id: int, job_type: str, import_data=None, total: int = 0,
                           source_playlist_id: Optional[int] = None) -> int:
        target_kind = TargetKind.PLAYLIST.value
        session = self._session_factory()
        try:
            ids = [playlist_id] + ([source_playlist_id] if source_playlist_id is not None else [])
            found = session.query(Playlist.id).filter(Playlist.id.in_(ids)).count()
            if found != len(set(ids)):
                raise LookupError("Playlist not found")

            self.ensure_target_idle(session, target_kind, playlist_id)

            job = ImportJob(
                playlist_id=playlist_id,
                job_type=job_type,
                source_playlist_id=source_playlist_id,
                status=JobStatus.PENDING.value,
                progress=0,
                message="Waiting to start",
                total_mappings=total,
                import_data=import_data,
            )
            session.add(job)
            session.commit()
            job_id = job.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("[IMPORT-JOB] Created %s job %s for playlist %s", job_type, job_id, playlist_id)
        self._launch((JOB_IMPORT, job_id), target_kind, playlist_id, self._run_import)
        return job_id

    # -- phase helpers ------------------------------------------------------

    def _load_job(self, session: Session, ref: JobRef):
        model = SyncJob if ref[0] == JOB_SYNC else ImportJob
        job = session.query(model).filter(model.id == ref[1]).first()
        if job is None:
            raise LookupError(f"{ref[0]} job {ref[1]} disappeared")
        return job

    def _advance(self, ref: JobRef, status: JobStatus, progress: int, message: str) -> None:
        """Commit a phase change in its own short transaction."""
        session = self._session_factory()
        try:
            job = self._load_job(session, ref)
            transition(job, status, progress, message)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _fail(self, ref: JobRef, error: Exception) -> None:
        session = self._session_factory()
        try:
            job = self._load_job(session, ref)
            if JobStatus(job.status).is_terminal:
                logger.warning(
                    "[JOBS] %s job %s already %s, dropping late error: %s",
                    ref[0], ref[1], job.status, error,
                )
                return
            message = str(error) or error.__class__.__name__
            transition(job, JobStatus.FAILED, message=message)
            job.error = message
            session.commit()
        except Exception as e:
            session.rollback()
            logger.exception("[JOBS] Could not record failure of %s job %s: %s", ref[0], ref[1], e)
        finally:
            session.close()

    # -- sync runner --------------------------------------------------------

    async def _run_sync(self, job_id: int) -> None:
        ref = (JOB_SYNC, job_id)
        session = self._session_factory()
        try:
            job = self._load_job(session, ref)
            target_kind, target_id = job.target_kind, job.target_id
            if target_kind == TargetKind.PLAYLIST.value:
                playlist = session.query(Playlist).filter(Playlist.id == target_id).first()
                if playlist is None:
                    raise LookupError(f"Playlist {target_id} no longer exists")
                descriptor = SourceDescriptor.for_playlist(playlist, job.get_category_filters())
            else:
                epg_file = session.query(EpgFile).filter(EpgFile.id == target_id).first()
                if epg_file is None:
                    raise LookupError(f"EPG file {target_id} no longer exists")
                descriptor = SourceDescriptor.for_epg_file(epg_file)
        finally:
            session.close()

        self._advance(ref, JobStatus.DOWNLOADING, 5, "Downloading source")
        payload = await self.adapter.fetch(descriptor)

        self._advance(ref, JobStatus.PARSING, 30, "Parsing source")
        parsed = await self.adapter.parse(payload, descriptor)

        self._advance(
            ref, JobStatus.IMPORTING, 60,
            f"Importing {parsed.total_channels} channels",
        )

        session = self._session_factory()
        try:
            job = self._load_job(session, ref)
            if target_kind == TargetKind.PLAYLIST.value:
                saved = self._import_playlist(session, job, parsed)
            else:
                saved = self._import_guide(session, job, parsed)
            transition(job, JobStatus.COMPLETED, 100, f"Sync completed: {saved} channels saved")
            session.commit()
        except Exception:
            # Nothing of a failed import reaches the database
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("[SYNC-JOB] Job %s completed: %s channels saved", job_id, saved)

    def _import_playlist(self, session: Session, job: SyncJob, parsed: ParsedSource) -> int:
        playlist = session.query(Playlist).filter(Playlist.id == job.target_id).first()
        if playlist is None:
            raise LookupError(f"Playlist {job.target_id} no longer exists")

        strategy = IdentifierStrategy.for_playlist(playlist)
        old = session.query(Channel).filter(
            Channel.playlist_id == playlist.id
        ).order_by(Channel.sort_order, Channel.id).all()
        diff = reconcile(old, parsed.records, strategy)
        report_progress(job, 70, f"Saving {len(diff.matched) + len(diff.added)} channels")

        category_order = save_categories(
            session, playlist.id, parsed.categories, job.get_category_filters()
        )

        old_order = {channel.id: channel.sort_order for channel in old}
        carry_forward(diff.matched)
        added_rows = []
        for record in diff.added:
            channel = Channel(playlist_id=playlist.id, sort_order=0)
            channel.update_from_record(record)
            session.add(channel)
            added_rows.append(channel)
        for channel in diff.removed:
            session.delete(channel)
        session.flush()

        # Kept channels stay in their previous order, new ones follow in source order
        ranked = [((0, old_order[c.id]), c) for c, _ in diff.matched]
        ranked += [((1, index), c) for index, c in enumerate(added_rows)]
        ranked.sort(key=lambda pair: pair[0])
        grouped: Dict[Optional[str], List[Channel]] = {}
        for _, channel in ranked:
            grouped.setdefault(channel.category_id or None, []).append(channel)

        rows = [c for _, c in ranked]
        apply_updates(rows, assign_for_category_order(category_order, grouped))

        job.summary = json.dumps(diff.to_summary())
        job.total_channels = len(rows)
        job.total_categories = len(parsed.categories)
        playlist.last_synced_at = datetime.utcnow()
        report_progress(job, 90)
        logger.info(
            "[SYNC-JOB] Playlist %s: %s added, %s removed, %s kept",
            playlist.id, len(diff.added), len(diff.removed), len(diff.matched),
        )
        return len(rows)

    def _import_guide(self, session: Session, job: SyncJob, parsed: ParsedSource) -> int:
        epg_file = session.query(EpgFile).filter(EpgFile.id == job.target_id).first()
        if epg_file is None:
            raise LookupError(f"EPG file {job.target_id} no longer exists")

        old = session.query(ChannelLineup).filter(
            ChannelLineup.epg_file_id == epg_file.id
        ).order_by(ChannelLineup.sort_order, ChannelLineup.id).all()
        diff = reconcile(old, parsed.records, IdentifierStrategy.metadata(MetadataKey.TVG_ID))
        report_progress(job, 70, f"Saving {len(diff.matched) + len(diff.added)} guide channels")

        # Operator edits to name, logo and category survive a guide resync
        for entry, record in diff.matched:
            entry.tvg_id = record.identity_hint
            if not entry.tvg_logo and record.icon_ref:
                entry.tvg_logo = record.icon_ref
        next_sort = max((e.sort_order for e in old), default=0) + 1
        for index, record in enumerate(diff.added):
            session.add(ChannelLineup(
                epg_file_id=epg_file.id,
                name=record.display_name,
                tvg_id=record.identity_hint,
                tvg_logo=record.icon_ref or None,
                ext_grp=CATCH_ALL_CATEGORY,
                sort_order=next_sort + index,
            ))
        for entry in diff.removed:
            session.delete(entry)
        session.flush()
        renumber_file(session, epg_file.id)

        saved = len(diff.matched) + len(diff.added)
        epg_file.channel_count = saved
        epg_file.programme_count = parsed.programme_count
        epg_file.last_synced_at = datetime.utcnow()
        job.summary = json.dumps(diff.to_summary())
        job.total_channels = saved
        job.total_categories = len({
            grp for (grp,) in session.query(ChannelLineup.ext_grp).filter(
                ChannelLineup.epg_file_id == epg_file.id
            ).distinct().all()
        })
        report_progress(job, 90)
        return saved

    # -- import runner ------------------------------------------------------

    async def _run_import(self, job_id: int) -> None:
        ref = (JOB_IMPORT, job_id)
        self._advance(ref, JobStatus.PARSING, 10, "Reading import data")
        self._advance(ref, JobStatus.IMPORTING, 40, "Matching channels")

        session = self._session_factory()
        try:
            job = self._load_job(session, ref)
            if job.job_type == IMPORT_TYPE_COPY:
                result = copy_mappings(session, job.source_playlist_id, job.playlist_id)
                job.mapped = result.mapped
                job.not_found = result.not_found
                job.channels_in_json_not_in_playlist = json.dumps(result.not_found_channels)
                job.channels_in_playlist_not_in_json = json.dumps([])
                message = f"Copy completed: {result.mapped} mapped, {result.not_found} not found"
            else:
                self._apply_json_import(session, job)
                message = f"Import completed: {job.mapped} mapped, {job.not_found} not found"
            transition(job, JobStatus.COMPLETED, 100, message)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("[IMPORT-JOB] Job %s completed", job_id)

    def _apply_json_import(self, session: Session, job: ImportJob) -> None:
        entries = job.get_import_data()
        if not isinstance(entries, list):
            raise ValidationError("Import data must be a list of mapping entries")

        playlist = session.query(Playlist).filter(Playlist.id == job.playlist_id).first()
        if playlist is None:
            raise LookupError(f"Playlist {job.playlist_id} no longer exists")
        strategy = IdentifierStrategy.for_playlist(playlist)
        channels = session.query(Channel).filter(
            Channel.playlist_id == playlist.id
        ).order_by(Channel.sort_order, Channel.id).all()

        by_identity: Dict[str, Channel] = {}
        by_stream: Dict[str, Channel] = {}
        by_tvg_name: Dict[str, Channel] = {}
        for channel in channels:
            by_identity.setdefault(extract(channel, strategy), channel)
            by_stream.setdefault(channel.stream_id, channel)
            if channel.tvg_name:
                by_tvg_name.setdefault(channel.tvg_name, channel)

        file_id, group_id = resolve_lineup_source(session, playlist)
        lineup = lineup_by_name(get_lineup_entries(session, file_id, group_id))

        mapped = 0
        not_in_playlist = []
        matched_ids = set()
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ValidationError(f"Import entry {index} is not an object")
            raw_key = entry.get("channelId")
            channel_key = "" if raw_key is None else str(raw_key).strip()
            tvg_name = entry.get("tvgName")
            channel = None
            if channel_key:
                channel = by_identity.get(channel_key) or by_stream.get(channel_key)
            if channel is None and tvg_name:
                channel = by_tvg_name.get(tvg_name)
            if channel is None:
                not_in_playlist.append({
                    "channelId": channel_key,
                    "channelName": entry.get("channelName") or tvg_name or "",
                })
                continue

            name = entry.get("channelName") or tvg_name or channel.name
            lineup_entry = lineup.get(name.strip().lower())
            if lineup_entry is not None:
                mapping = ChannelMapping.from_lineup(lineup_entry)
            else:
                mapping = ChannelMapping(
                    name=name,
                    logo=entry.get("tvgLogo") or "",
                    tvg_id=entry.get("tvgId") or None,
                    ext_grp=entry.get("extGrp") or None,
                )
            channel.set_mapping(mapping)
            matched_ids.add(channel.id)
            mapped += 1

        not_in_json = [
            {"channelId": extract(c, strategy), "channelName": c.name}
            for c in channels if c.id not in matched_ids
        ]
        job.mapped = mapped
        job.not_found = len(not_in_playlist)
        job.total_mappings = len(entries)
        job.channels_in_json_not_in_playlist = json.dumps(not_in_playlist)
        job.channels_in_playlist_not_in_json = json.dumps(not_in_json)
        report_progress(job, 90)

    # -- maintenance --------------------------------------------------------

    def reap_stuck_jobs(self, target_kind: str, target_id: int) -> dict:
        """Fail jobs of a target that have not progressed within the stuck timeout.

        Returns:
            ``{"cleaned": n, "jobs": [{"jobId", "jobType", "error"}]}``
        """
        target_kind = TargetKind(target_kind).value
        timeout = self.settings.stuck_job_timeout_minutes
        cutoff = datetime.utcnow() - timedelta(minutes=timeout)
        session = self._session_factory()
        report = []
        try:
            stuck: List[Tuple[str, object]] = [
                (JOB_SYNC, job) for job in session.query(SyncJob).filter(
                    SyncJob.target_kind == target_kind,
                    SyncJob.target_id == target_id,
                    SyncJob.status.in_(NON_TERMINAL_STATUSES),
                    SyncJob.updated_at < cutoff,
                ).all()
            ]
            if target_kind == TargetKind.PLAYLIST.value:
                stuck += [
                    (JOB_IMPORT, job) for job in session.query(ImportJob).filter(
                        ImportJob.playlist_id == target_id,
                        ImportJob.status.in_(NON_TERMINAL_STATUSES),
                        ImportJob.updated_at < cutoff,
                    ).all()
                ]
            for job_type, job in stuck:
                error = StuckJobError(job.id, timeout)
                transition(job, JobStatus.FAILED, message=str(error))
                job.error = str(error)
                report.append({"jobId": job.id, "jobType": job_type, "error": str(error)})
                self.registry.release(target_kind, target_id, (job_type, job.id))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if report:
            logger.warning(
                "[JOBS] Reaped %s stuck job(s) for %s %s", len(report), target_kind, target_id
            )
        return {"cleaned": len(report), "jobs": report}

    def recover_interrupted_jobs(self) -> int:
        """Fail jobs a previous process left non-terminal. Call once at startup."""
        session = self._session_factory()
        count = 0
        try:
            for model in (SyncJob, ImportJob):
                for job in session.query(model).filter(model.status.in_(NON_TERMINAL_STATUSES)).all():
                    message = "Server restarted while job was running"
                    transition(job, JobStatus.FAILED, message=message)
                    job.error = message
                    count += 1
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if count:
            logger.info("[JOBS] Marked %s interrupted job(s) as failed", count)
        return count


# ---------------------------------------------------------------------------
# Category persistence
# ---------------------------------------------------------------------------

def store_category_selection(session: Session, playlist_id: int, category_ids: Sequence[str]) -> None:
    selected = set(category_ids)
    for category in session.query(Category).filter(Category.playlist_id == playlist_id).all():
        category.is_selected = category.category_id in selected


def save_categories(
    session: Session,
    playlist_id: int,
    hints: Sequence[CategoryHint],
    selected: Sequence[str] = (),
) -> List[str]:
    """
    Upsert a playlist's categories from a parsed source and return the category order.

    Existing categories keep their selection flag and position; new ones are
    appended in source order and selected only when listed in ``selected``;
    categories the source no longer lists are deleted.
    """
    existing = {
        c.category_id: c for c in session.query(Category).filter(
            Category.playlist_id == playlist_id
        ).order_by(Category.sort_order, Category.id).all()
    }
    incoming = {h.category_id: h for h in hints}
    chosen = set(selected)

    order = [key for key in existing if key in incoming]
    order += [h.category_id for h in hints if h.category_id not in existing]
    order = list(dict.fromkeys(order))

    for key, category in existing.items():
        if key not in incoming:
            session.delete(category)
    for position, key in enumerate(order):
        hint = incoming[key]
        category = existing.get(key)
        if category is None:
            category = Category(
                playlist_id=playlist_id,
                category_id=key,
                category_name=hint.category_name or key,
                is_selected=key in chosen,
            )
            session.add(category)
        elif hint.category_name:
            category.category_name = hint.category_name
        category.sort_order = position
    return order


def get_job_manager(request: Request) -> JobManager:
    """FastAPI dependency returning the application's JobManager."""
    return request.app.state.job_manager
