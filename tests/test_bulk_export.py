"""
Unit tests for the bulk export pipeline, run against an in-memory record
source so that no database or Flask context is involved.
"""
import base64
import io
import json
import random
import zipfile
import datetime as dt

import pytest
from pypdf import PdfReader, PdfWriter

from bulk_export import (
    Caller, ExportComplete, ExportProgress, ExportStarted, ExportTimeout, FetchFailure,
    Forbidden, IncompleteStream, MissingParameter, NoResultsInRange, StreamProtocolError,
    Unauthorized, build_bulk_export, chunk, export_file_name, iter_bulk_export,
    parse_date_range, read_export_stream, stream_bulk_export,
)
from inspection_pdf import InspectionRow, ItemRow

MANAGER = Caller(profile_id=1, is_manager_admin=True)
DRIVER = Caller(profile_id=2, is_manager_admin=False)
FROM, TO = '2024-01-01', '2024-12-31'


class FakeSource:
    """Record source with call counters; ``empty`` ids have no items, ``broken`` ids fail."""

    def __init__(self, rows, empty=(), broken=()):
        self.rows = list(rows)
        self.empty = set(empty)
        self.broken = set(broken)
        self.inspection_calls = 0
        self.item_calls = []

    def fetch_inspections(self, date_from, date_to):
        self.inspection_calls += 1
        return [r for r in self.rows if date_from <= r.week_ending <= date_to]

    def fetch_items(self, inspection_id):
        self.item_calls.append(inspection_id)
        if inspection_id in self.broken:
            raise RuntimeError('connection reset')
        if inspection_id in self.empty:
            return []
        return [ItemRow(item_number=1, day_of_week=1, description='Oil', status='ok')]


class BrokenSource(FakeSource):
    def fetch_inspections(self, date_from, date_to):
        self.inspection_calls += 1
        raise RuntimeError('relation "vehicle_inspection" does not exist')


class TickingClock:
    """Advances one second every time it is read."""

    def __init__(self):
        self.t = 0.0

    def __call__(self):
        self.t += 1
        return self.t


def make_rows(n):
    return [InspectionRow(id=i, week_ending=dt.date(2024, 1, 7) + dt.timedelta(weeks=(i - 1) // 5),
                          status='submitted', vehicle_reg=f'REG{i}')
            for i in range(1, n + 1)]


def blank_pdf(row, items):
    writer = PdfWriter()
    writer.add_blank_page(width=100, height=100)
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def page_count(data):
    return len(PdfReader(io.BytesIO(data)).pages)


def run(source, caller=MANAGER, **options):
    options.setdefault('render', blank_pdf)
    return list(iter_bulk_export(FROM, TO, caller, source, **options))


# =======================
# VALIDATION & ACCESS
# =======================

class TestValidation:

    @pytest.mark.parametrize('date_from, date_to', [
        (None, TO), (FROM, None), ('', TO), ('   ', TO), (None, None),
    ])
    def test_missing_dates_fail_before_any_data_access(self, date_from, date_to):
        src = FakeSource(make_rows(3))
        with pytest.raises(MissingParameter) as exc_info:
            list(iter_bulk_export(date_from, date_to, MANAGER, src, render=blank_pdf))
        assert exc_info.value.status == 400
        assert src.inspection_calls == 0
        assert src.item_calls == []

    def test_missing_dates_checked_before_identity(self):
        src = FakeSource(make_rows(3))
        with pytest.raises(MissingParameter):
            list(iter_bulk_export(None, TO, None, src))

    def test_malformed_date_is_rejected(self):
        with pytest.raises(MissingParameter) as exc_info:
            parse_date_range('01/02/2024', TO)
        assert 'ISO' in exc_info.value.message
        assert '01/02/2024' in exc_info.value.details

    def test_parse_accepts_dates_and_padded_strings(self):
        assert parse_date_range(dt.date(2024, 1, 1), ' 2024-02-01 ') == (dt.date(2024, 1, 1), dt.date(2024, 2, 1))

    def test_no_identity_is_unauthorized(self):
        src = FakeSource(make_rows(3))
        with pytest.raises(Unauthorized) as exc_info:
            run(src, caller=None)
        assert exc_info.value.status == 401
        assert src.inspection_calls == 0

    @pytest.mark.parametrize('rows', [make_rows(3), []])
    def test_non_manager_is_forbidden_for_any_range(self, rows):
        src = FakeSource(rows)
        with pytest.raises(Forbidden) as exc_info:
            run(src, caller=DRIVER)
        assert exc_info.value.status == 403
        assert src.inspection_calls == 0

    def test_empty_range_is_an_error_not_an_empty_file(self):
        src = FakeSource(make_rows(3))
        with pytest.raises(NoResultsInRange) as exc_info:
            list(iter_bulk_export('2030-01-01', '2030-12-31', MANAGER, src, render=blank_pdf))
        assert exc_info.value.status == 404

    def test_record_query_failure_is_fatal(self):
        src = BrokenSource([])
        with pytest.raises(FetchFailure) as exc_info:
            run(src)
        assert exc_info.value.status == 500
        assert 'does not exist' in exc_info.value.details


# =======================
# CHUNKING & PACKAGING
# =======================

class TestChunking:

    def test_chunk_sizes(self):
        assert [len(c) for c in chunk(list(range(165)), 80)] == [80, 80, 5]
        assert [len(c) for c in chunk(list(range(80)), 80)] == [80]
        assert chunk([], 80) == []

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            chunk([1, 2], 0)

    def test_file_names(self):
        a, b = dt.date(2024, 1, 1), dt.date(2024, 3, 31)
        assert export_file_name(a, b) == 'All_Inspections_2024-01-01_to_2024-03-31.pdf'
        assert export_file_name(a, b, 2) == 'All_Inspections_2024-01-01_to_2024-03-31_Part2.pdf'
        assert export_file_name(a, b, ext='zip') == 'All_Inspections_2024-01-01_to_2024-03-31.zip'

    def test_small_export_is_a_single_pdf(self):
        artifact = build_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(5)), render=blank_pdf)
        assert artifact.content_type == 'application/pdf'
        assert artifact.file_name == 'All_Inspections_2024-01-01_to_2024-12-31.pdf'
        assert page_count(artifact.data) == 5
        assert [p.inspection_ids for p in artifact.parts] == [[1, 2, 3, 4, 5]]

    def test_large_export_is_a_zip_of_parts(self):
        artifact = build_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(165)), render=blank_pdf)
        assert artifact.content_type == 'application/zip'
        assert artifact.file_name == 'All_Inspections_2024-01-01_to_2024-12-31.zip'

        with zipfile.ZipFile(io.BytesIO(artifact.data)) as zf:
            names = zf.namelist()
            assert names == [f'All_Inspections_2024-01-01_to_2024-12-31_Part{n}.pdf' for n in (1, 2, 3)]
            assert [page_count(zf.read(n)) for n in names] == [80, 80, 5]
        assert artifact.parts[2].inspection_ids == list(range(161, 166))

    def test_init_announces_parts(self):
        events = run(FakeSource(make_rows(165)))
        assert events[0] == ExportStarted(total=165, needs_zip=True, num_parts=3)
        assert isinstance(events[-1], ExportComplete)

    def test_output_is_ordered_by_week_ending_then_id(self):
        rows = make_rows(30)
        shuffled = rows[:]
        random.Random(7).shuffle(shuffled)

        first = build_bulk_export(FROM, TO, MANAGER, FakeSource(shuffled), render=blank_pdf, chunk_size=8)
        again = build_bulk_export(FROM, TO, MANAGER, FakeSource(shuffled[::-1]), render=blank_pdf, chunk_size=8)

        expected = [r.id for r in sorted(rows, key=lambda r: (r.week_ending, r.id))]
        ids = [i for p in first.parts for i in p.inspection_ids]
        assert ids == expected
        assert [p.inspection_ids for p in first.parts] == [p.inspection_ids for p in again.parts]
        assert [p.file_name for p in first.parts] == [p.file_name for p in again.parts]


# =======================
# SKIP AND CONTINUE
# =======================

class TestSkipping:

    def test_record_without_items_is_skipped_but_counted(self):
        events = run(FakeSource(make_rows(10), empty={4}))
        progress = [e for e in events if isinstance(e, ExportProgress)]
        assert [e.current for e in progress] == list(range(1, 11))
        assert progress[-1].current == progress[-1].total == 10

        artifact = events[-1].artifact
        assert page_count(artifact.data) == 9
        assert 4 not in artifact.parts[0].inspection_ids

    def test_item_fetch_failure_is_skipped(self):
        artifact = build_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(3), broken={2}), render=blank_pdf)
        assert artifact.parts[0].inspection_ids == [1, 3]

    def test_render_failure_is_skipped(self):
        def render(row, items):
            if row.id == 3:
                raise ValueError('bad glyph')
            return blank_pdf(row, items)

        artifact = build_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(5)), render=render)
        assert artifact.parts[0].inspection_ids == [1, 2, 4, 5]
        assert page_count(artifact.data) == 4

    def test_empty_part_is_left_out_and_parts_renumbered(self):
        src = FakeSource(make_rows(6), empty={3, 4})
        artifact = build_bulk_export(FROM, TO, MANAGER, src, render=blank_pdf, chunk_size=2)

        assert artifact.content_type == 'application/zip'
        assert [p.inspection_ids for p in artifact.parts] == [[1, 2], [5, 6]]
        with zipfile.ZipFile(io.BytesIO(artifact.data)) as zf:
            assert [n.rsplit('_', 1)[1] for n in zf.namelist()] == ['Part1.pdf', 'Part2.pdf']

    def test_single_surviving_part_is_delivered_as_pdf(self):
        events = run(FakeSource(make_rows(4), empty={3, 4}), chunk_size=2)
        assert events[0].num_parts == 2
        artifact = events[-1].artifact
        assert artifact.content_type == 'application/pdf'
        assert 'Part' not in artifact.file_name
        assert artifact.parts[0].inspection_ids == [1, 2]

    def test_everything_skipped_is_no_results(self):
        src = FakeSource(make_rows(3), empty={1, 2, 3})
        with pytest.raises(NoResultsInRange) as exc_info:
            run(src)
        assert 'checklist items' in exc_info.value.message
        assert src.item_calls == [1, 2, 3]


# =======================
# TIMEOUT
# =======================

def test_timeout_stops_the_export():
    events = []
    with pytest.raises(ExportTimeout) as exc_info:
        for event in iter_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(10)),
                                      render=blank_pdf, timeout=2.5, clock=TickingClock()):
            events.append(event)
    assert exc_info.value.status == 504
    assert [e.current for e in events if isinstance(e, ExportProgress)] == [1, 2]


def test_no_timeout_when_disabled():
    events = run(FakeSource(make_rows(3)), timeout=None, clock=TickingClock())
    assert isinstance(events[-1], ExportComplete)


# =======================
# STREAMING
# =======================

class TestStream:

    def test_stream_contract(self):
        lines = list(stream_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(10)),
                                        render=blank_pdf, chunk_size=4))
        assert all(line.endswith('\n') for line in lines)

        messages, terminal = read_export_stream(lines)
        assert messages[0] == {'type': 'init', 'total': 10, 'needsZip': True, 'numParts': 3}
        progress = [m for m in messages if m['type'] == 'progress']
        assert [m['current'] for m in progress] == list(range(1, 11))
        assert [m['currentPart'] for m in progress] == [1] * 4 + [2] * 4 + [3] * 2
        assert {m['totalParts'] for m in progress} == {3}

        assert terminal is messages[-1]
        assert terminal['type'] == 'complete'
        assert terminal['contentType'] == 'application/zip'
        assert terminal['fileName'] == 'All_Inspections_2024-01-01_to_2024-12-31.zip'
        with zipfile.ZipFile(io.BytesIO(base64.b64decode(terminal['data']))) as zf:
            assert len(zf.namelist()) == 3

    def test_single_pdf_stream(self):
        lines = list(stream_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(5)), render=blank_pdf))
        _, terminal = read_export_stream(lines)
        data = base64.b64decode(terminal['data'])
        assert terminal['contentType'] == 'application/pdf'
        assert data.startswith(b'%PDF')
        assert page_count(data) == 5

    def test_validation_error_is_the_only_message(self):
        src = FakeSource(make_rows(3))
        lines = list(stream_bulk_export(None, TO, MANAGER, src))
        assert [json.loads(line) for line in lines] == [{'error': 'dateFrom and dateTo are required'}]
        assert src.inspection_calls == 0

    def test_forbidden_is_reported_in_stream(self):
        lines = list(stream_bulk_export(FROM, TO, DRIVER, FakeSource(make_rows(3))))
        _, terminal = read_export_stream(lines)
        assert terminal == {'error': 'Unauthorized - Admin/Manager access required'}

    def test_failure_after_progress_ends_with_error(self):
        lines = list(stream_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(2)),
                                        render=lambda row, items: b'not a pdf'))
        messages, terminal = read_export_stream(lines)
        assert [m.get('type') for m in messages[:-1]] == ['init', 'progress', 'progress']
        assert terminal['error'] == 'Failed to package PDFs'
        assert 'details' in terminal

    def test_closing_the_stream_stops_rendering(self):
        src = FakeSource(make_rows(10))
        gen = stream_bulk_export(FROM, TO, MANAGER, src, render=blank_pdf)
        assert json.loads(next(gen))['type'] == 'init'
        assert json.loads(next(gen))['type'] == 'progress'
        gen.close()
        assert src.item_calls == [1]


class TestReadStream:

    def _lines(self):
        return list(stream_bulk_export(FROM, TO, MANAGER, FakeSource(make_rows(3)), render=blank_pdf))

    def test_handles_arbitrary_chunk_boundaries(self):
        raw = ''.join(self._lines()).encode('utf-8')
        pieces = [raw[i:i + 7] for i in range(0, len(raw), 7)]
        messages, terminal = read_export_stream(pieces)
        assert [m['type'] for m in messages] == ['init', 'progress', 'progress', 'progress', 'complete']
        assert terminal['type'] == 'complete'

    def test_missing_terminal_message(self):
        with pytest.raises(IncompleteStream):
            read_export_stream(self._lines()[:-1])

    def test_connection_dropped_inside_complete_line(self):
        lines = self._lines()
        cut = lines[-1][:len(lines[-1]) // 2]
        with pytest.raises(IncompleteStream):
            read_export_stream(lines[:-1] + [cut])

    def test_connection_dropped_near_the_end(self):
        raw = ''.join(self._lines()).encode('utf-8')
        with pytest.raises(IncompleteStream):
            read_export_stream([raw[:-40]])

    def test_garbage_line_is_a_protocol_error(self):
        lines = self._lines()
        with pytest.raises(StreamProtocolError) as exc_info:
            read_export_stream([lines[0], '{"type": "prog\n'] + lines[1:])
        assert not isinstance(exc_info.value, IncompleteStream)

    def test_progress_must_increase(self):
        lines = self._lines()
        with pytest.raises(StreamProtocolError):
            read_export_stream([lines[0], lines[2], lines[1]] + lines[3:])

    def test_nothing_after_terminal(self):
        lines = self._lines()
        with pytest.raises(StreamProtocolError):
            read_export_stream(lines + [lines[1]])

    def test_complete_requires_full_progress(self):
        lines = self._lines()
        with pytest.raises(StreamProtocolError):
            read_export_stream([lines[0], lines[1], lines[-1]])
