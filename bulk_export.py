# bulk_export.py
"""Bulk inspection export.

Selects every submitted inspection in a week-ending range, renders each one,
merges them into PDFs of at most ``chunk_size`` inspections and, when more
than one part results, zips the parts. ``iter_bulk_export`` yields progress
events as it goes; ``build_bulk_export`` and ``stream_bulk_export`` are the
blocking and newline-delimited-JSON front ends over it.

Nothing here touches Flask: the caller's identity, the record source and
the renderer are all passed in.
"""
import base64
import codecs
import io
import json
import logging
import time
import zipfile
import datetime as dt
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional, Union

from pypdf import PdfReader, PdfWriter

from inspection_pdf import InspectionRow, ItemRow, render_inspection

log = logging.getLogger(__name__)

MAX_INSPECTIONS_PER_PDF = 80
PDF_CONTENT_TYPE = 'application/pdf'
ZIP_CONTENT_TYPE = 'application/zip'


# --------------------------- Errors --------------------------------
class BulkExportError(Exception):
    """Fatal export failure; ``status`` is the HTTP status to answer with."""
    status = 500
    message = 'Failed to generate PDFs'

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_message(self) -> dict:
        msg = {'error': self.message}
        if self.details:
            msg['details'] = self.details
        return msg


class MissingParameter(BulkExportError):
    status = 400
    message = 'dateFrom and dateTo are required'


class Unauthorized(BulkExportError):
    status = 401
    message = 'Unauthorized'


class Forbidden(BulkExportError):
    status = 403
    message = 'Unauthorized - Admin/Manager access required'


class NoResultsInRange(BulkExportError):
    status = 404
    message = 'No inspections found in the selected date range'


class FetchFailure(BulkExportError):
    message = 'Failed to fetch inspections'


class PackagingFailure(BulkExportError):
    message = 'Failed to package PDFs'


class ExportTimeout(BulkExportError):
    status = 504
    message = 'PDF generation timed out'


class RenderFailure(BulkExportError):
    """Raised for a single inspection; the export skips it and carries on."""
    message = 'Failed to render inspection'


class StreamProtocolError(Exception):
    """A progress stream broke the init/progress/terminal ordering."""


class IncompleteStream(StreamProtocolError):
    """A progress stream ended without a complete or error message."""


# --------------------------- Types ----------------------------------
@dataclass(frozen=True)
class Caller:
    profile_id: int
    is_manager_admin: bool = False


@dataclass
class ExportPart:
    file_name: str
    inspection_ids: list
    data: bytes


@dataclass
class ExportArtifact:
    file_name: str
    content_type: str
    data: bytes
    parts: list = field(default_factory=list)


@dataclass(frozen=True)
class ExportStarted:
    total: int
    needs_zip: bool
    num_parts: int

    def to_message(self) -> dict:
        return {'type': 'init', 'total': self.total,
                'needsZip': self.needs_zip, 'numParts': self.num_parts}


@dataclass(frozen=True)
class ExportProgress:
    current: int
    total: int
    current_part: int
    total_parts: int

    def to_message(self) -> dict:
        return {'type': 'progress', 'current': self.current, 'total': self.total,
                'currentPart': self.current_part, 'totalParts': self.total_parts}


@dataclass(frozen=True)
class ExportComplete:
    artifact: ExportArtifact

    def to_message(self) -> dict:
        return {'type': 'complete',
                'data': base64.b64encode(self.artifact.data).decode('ascii'),
                'fileName': self.artifact.file_name,
                'contentType': self.artifact.content_type}


ExportEvent = Union[ExportStarted, ExportProgress, ExportComplete]
Renderer = Callable[[InspectionRow, list[ItemRow]], bytes]


# --------------------------- Helpers --------------------------------
def _as_date(value) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    return dt.date.fromisoformat(str(value).strip())


def parse_date_range(date_from, date_to) -> tuple[dt.date, dt.date]:
    """Validate the requested range. No data is read before this passes."""
    if isinstance(date_from, str):
        date_from = date_from.strip()
    if isinstance(date_to, str):
        date_to = date_to.strip()
    if not date_from or not date_to:
        raise MissingParameter()
    try:
        return _as_date(date_from), _as_date(date_to)
    except ValueError:
        raise MissingParameter('dateFrom and dateTo must be ISO dates (YYYY-MM-DD)',
                               details=f'dateFrom={date_from!r}, dateTo={date_to!r}') from None


def authorize(caller: Optional[Caller]) -> None:
    if caller is None:
        raise Unauthorized()
    if not caller.is_manager_admin:
        raise Forbidden()


def chunk(rows: list, size: int) -> list[list]:
    if size < 1:
        raise ValueError(f'chunk size must be positive, got {size}')
    return [rows[i:i + size] for i in range(0, len(rows), size)]


def export_file_name(date_from: dt.date, date_to: dt.date,
                     part: Optional[int] = None, ext: str = 'pdf') -> str:
    suffix = f'_Part{part}' if part is not None else ''
    return f'All_Inspections_{date_from.isoformat()}_to_{date_to.isoformat()}{suffix}.{ext}'


def merge_pdfs(buffers: list[bytes]) -> bytes:
    """Concatenate the pages of several PDFs, in order."""
    writer = PdfWriter()
    for buf in buffers:
        for page in PdfReader(io.BytesIO(buf)).pages:
            writer.add_page(page)
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def package(merged: list[tuple[list, bytes]], date_from: dt.date, date_to: dt.date) -> ExportArtifact:
    """One part is delivered as a PDF; several go into a ZIP, one entry each."""
    if len(merged) == 1:
        ids, data = merged[0]
        name = export_file_name(date_from, date_to)
        return ExportArtifact(name, PDF_CONTENT_TYPE, data, [ExportPart(name, ids, data)])

    parts = [ExportPart(export_file_name(date_from, date_to, n), ids, data)
             for n, (ids, data) in enumerate(merged, start=1)]
    out = io.BytesIO()
    try:
        with zipfile.ZipFile(out, 'w', zipfile.ZIP_DEFLATED) as zf:
            for p in parts:
                zf.writestr(p.file_name, p.data)
    except (zipfile.BadZipFile, OSError, ValueError) as e:
        raise PackagingFailure(details=str(e)) from e
    return ExportArtifact(export_file_name(date_from, date_to, ext='zip'),
                          ZIP_CONTENT_TYPE, out.getvalue(), parts)


def _render_record(source, row: InspectionRow, render: Renderer) -> bytes:
    try:
        items = source.fetch_items(row.id)
    except Exception as e:
        raise RenderFailure(details=f'failed to fetch items: {e}') from e
    if not items:
        raise RenderFailure(details='no items found')
    try:
        return render(row, items)
    except Exception as e:
        raise RenderFailure(details=f'render error: {e}') from e


def _check_deadline(started: float, timeout: Optional[float], clock: Callable[[], float]) -> None:
    if timeout is not None and clock() - started >= timeout:
        raise ExportTimeout(details=f'exceeded the {timeout:g}s limit')


# --------------------------- Pipeline -------------------------------
def iter_bulk_export(date_from, date_to, caller: Optional[Caller], source, *,
                     chunk_size: int = MAX_INSPECTIONS_PER_PDF,
                     timeout: Optional[float] = None,
                     render: Renderer = render_inspection,
                     clock: Callable[[], float] = time.monotonic) -> Iterator[ExportEvent]:
    """Run an export, yielding init, per-inspection progress, then complete.

    ``source`` needs ``fetch_inspections(date_from, date_to)`` and
    ``fetch_items(inspection_id)``. Fatal problems raise a
    ``BulkExportError``; an inspection whose items cannot be fetched, has no
    items or fails to render is skipped but still counted as progress.
    Chunks are rendered and merged one after another.
    """
    started = clock()
    start, end = parse_date_range(date_from, date_to)
    authorize(caller)

    try:
        rows = list(source.fetch_inspections(start, end))
    except BulkExportError:
        raise
    except Exception as e:
        raise FetchFailure(details=str(e)) from e
    if not rows:
        raise NoResultsInRange()
    rows.sort(key=lambda r: (r.week_ending, r.id))

    chunks = chunk(rows, chunk_size)
    total, num_parts = len(rows), len(chunks)
    log.info('Bulk export %s..%s: %d inspection(s) in %d part(s)', start, end, total, num_parts)
    yield ExportStarted(total=total, needs_zip=num_parts > 1, num_parts=num_parts)

    merged = []
    processed = 0
    for part_no, part_rows in enumerate(chunks, start=1):
        ids, buffers = [], []
        for row in part_rows:
            _check_deadline(started, timeout, clock)
            try:
                buffers.append(_render_record(source, row, render))
                ids.append(row.id)
            except RenderFailure as e:
                log.warning('Skipping inspection %s - %s', row.id, e.details)
            processed += 1
            yield ExportProgress(current=processed, total=total,
                                 current_part=part_no, total_parts=num_parts)
        if not buffers:
            log.warning('Part %d of %d has no renderable inspections, leaving it out', part_no, num_parts)
            continue
        try:
            merged.append((ids, merge_pdfs(buffers)))
        except Exception as e:
            raise PackagingFailure(details=f'merging part {part_no}: {e}') from e

    _check_deadline(started, timeout, clock)
    if not merged:
        raise NoResultsInRange('No inspections with checklist items found in the selected date range')

    artifact = package(merged, start, end)
    log.info('Bulk export %s..%s done: %d of %d inspection(s), %s (%d bytes)',
             start, end, sum(len(p.inspection_ids) for p in artifact.parts), total,
             artifact.file_name, len(artifact.data))
    yield ExportComplete(artifact)


def build_bulk_export(date_from, date_to, caller: Optional[Caller], source, **options) -> ExportArtifact:
    """Blocking export: drain the events and return the artifact."""
    artifact = None
    for event in iter_bulk_export(date_from, date_to, caller, source, **options):
        if isinstance(event, ExportComplete):
            artifact = event.artifact
    return artifact


# --------------------------- Wire format ----------------------------
def encode_message(message: dict) -> str:
    return json.dumps(message) + '\n'


def stream_bulk_export(date_from, date_to, caller: Optional[Caller], source, **options) -> Iterator[str]:
    """Export as newline-delimited JSON.

    Always ends with exactly one terminal line, ``complete`` or an error
    object. Closing the generator (client went away) stops the export at the
    next inspection.
    """
    events = iter_bulk_export(date_from, date_to, caller, source, **options)
    try:
        for event in events:
            yield encode_message(event.to_message())
    except GeneratorExit:
        log.info('Bulk export stream closed by client, export cancelled')
        raise
    except BulkExportError as e:
        if e.status >= 500:
            log.exception('Bulk export failed')
        else:
            log.info('Bulk export rejected: %s', e.message)
        yield encode_message(e.to_message())
    except Exception as e:
        log.exception('Streaming PDF generation error')
        yield encode_message({'error': 'Failed to generate PDFs', 'details': str(e)})
    finally:
        events.close()


def read_export_stream(chunks: Iterable[Union[bytes, str]]) -> tuple[list[dict], dict]:
    """Parse a progress stream, checking its ordering.

    Returns every message and the terminal one. Raises
    ``IncompleteStream`` if the stream stops without a terminal message,
    including when it is cut off part-way through the last line.
    """
    messages = []
    state = {'init': None, 'current': 0, 'terminal': None}

    def handle(line, last=False):
        if not line.strip():
            return
        try:
            msg = json.loads(line)
        except json.JSONDecodeError as e:
            if last and state['terminal'] is None:
                raise IncompleteStream(f'stream ended part-way through a message: {line[:60]!r}') from e
            raise StreamProtocolError(f'undecodable message: {line[:60]!r}') from e
        if state['terminal'] is not None:
            raise StreamProtocolError(f'message after terminal message: {line!r}')
        kind = msg.get('type')
        if 'error' in msg:
            state['terminal'] = msg
        elif kind == 'init':
            if state['init'] is not None:
                raise StreamProtocolError('duplicate init message')
            state['init'] = msg
        elif kind == 'progress':
            if state['init'] is None:
                raise StreamProtocolError('progress before init')
            if msg['current'] <= state['current']:
                raise StreamProtocolError(f"progress went from {state['current']} to {msg['current']}")
            state['current'] = msg['current']
        elif kind == 'complete':
            if state['init'] is None:
                raise StreamProtocolError('complete before init')
            if state['current'] != state['init']['total']:
                raise StreamProtocolError(
                    f"complete after {state['current']} of {state['init']['total']} inspections")
            state['terminal'] = msg
        else:
            raise StreamProtocolError(f'unknown message: {line!r}')
        messages.append(msg)

    decoder = codecs.getincrementaldecoder('utf-8')()
    pending = ''
    for piece in chunks:
        pending += decoder.decode(piece) if isinstance(piece, bytes) else piece
        *lines, pending = pending.split('\n')
        for line in lines:
            handle(line)
    pending += decoder.decode(b'', final=True)
    handle(pending, last=True)

    if state['terminal'] is None:
        raise IncompleteStream('stream ended without a complete or error message')
    return messages, state['terminal']
