# inspection_pdf.py
"""Weekly vehicle inspection pads rendered with reportlab.

Two layouts exist: the standard (truck) pad with a fixed checklist and a
trailer section, and the company van pad whose rows come from the items
recorded on the inspection itself. ``render_inspection`` picks one from the
vehicle's category.
"""
import base64
import io
import logging
import re
import datetime as dt
from dataclasses import dataclass
from typing import Optional

from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

log = logging.getLogger(__name__)

DEFAULT_COMPANY_NAME = 'Fleet Compliance Ltd'

# --------------------------- Checklists -----------------------------
TRUCK_CHECKLIST_ITEMS = [
    'Fuel - and ad-blue',
    'Mirrors - includes Class V & Class VI',
    'Safety Equipment - Cameras & Audible Alerts',
    'Warning Signage - VRU Sign',
    'FORS Stickers',
    'Oil',
    'Water',
    'Battery',
    'Tyres',
    'Brakes',
    'Steering',
    'Lights',
    'Reflectors',
    'Indicators',
    'Wipers',
    'Washers',
    'Horn',
    'Markers',
    'Sheets / Ropes / Chains',
    'Security of Load',
    'Side underbar/Rails',
]

TRAILER_CHECKLIST_ITEMS = [
    'Brake Hoses',
    'Couplings Secure',
    'Electrical Connections',
    'Trailer No. Plate',
    'Nil Defects',
]

VAN_CHECKLIST_ITEMS = [
    'Fuel',
    'Oil',
    'Water / Coolant',
    'Battery',
    'Tyres & Wheel Nuts',
    'Brakes',
    'Steering',
    'Lights & Indicators',
    'Wipers & Washers',
    'Mirrors & Glass',
    'Horn',
    'Bodywork & Doors',
    'Seat Belts',
    'Load Secure',
]

STATUS_MARKS = {'ok': '/', 'attention': 'X', 'na': 'O'}
DAY_NAMES = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')
DAY_HEADERS = ('MON', 'TUE', 'WED', 'THUR', 'FRI', 'SAT', 'SUN')
DOTTED = '.' * 160


# --------------------------- Rows -----------------------------------
@dataclass(frozen=True)
class InspectionRow:
    """An exportable inspection with the display fields joined in."""
    id: int
    week_ending: dt.date
    status: str
    vehicle_reg: str = ''
    vehicle_category: str = ''  # category name, else vehicle type
    employee_name: str = ''
    mileage: Optional[int] = None
    action_taken: str = ''
    signature_data: Optional[str] = None


@dataclass(frozen=True)
class ItemRow:
    item_number: int
    day_of_week: int  # 1 = Monday
    description: str
    status: str
    comments: str = ''


# --------------------------- Template choice ------------------------
_VAN_WORD = re.compile(r'\bvans?\b', re.IGNORECASE)


def template_for(category: Optional[str]) -> str:
    """Map a category name / vehicle type to a layout key."""
    if category and _VAN_WORD.search(category):
        return 'van'
    return 'standard'


def form_number(inspection_id) -> str:
    return str(inspection_id)[-5:].upper().zfill(5)


def status_mark(status: str) -> str:
    return STATUS_MARKS.get(status, '')


def defect_lines(items: list[ItemRow], fallback_names: Optional[list[str]] = None) -> list[str]:
    """One line per item that carries a comment or needs attention."""
    lines = []
    for it in items:
        if not (it.comments or it.status == 'attention'):
            continue
        name = it.description
        if not name and fallback_names and 0 < it.item_number <= len(fallback_names):
            name = fallback_names[it.item_number - 1]
        day = DAY_NAMES[it.day_of_week - 1] if 1 <= it.day_of_week <= 7 else '?'
        text = f"{it.item_number}. {name} ({day}) [{status_mark(it.status)}]"
        if it.comments:
            text += f": {it.comments}"
        lines.append(text)
    return lines


def _signature_image(data_url: str) -> Optional[ImageReader]:
    if not data_url or ',' not in data_url:
        return None
    try:
        raw = base64.b64decode(data_url.split(',', 1)[1])
        img = Image.open(io.BytesIO(raw))
        img.load()
    except Exception as e:
        log.warning(f'Unreadable signature image: {e}')
        return None
    if img.mode in ('RGBA', 'LA'):
        bg = Image.new('RGB', img.size, 'white')
        bg.paste(img, mask=img.getchannel('A'))
        img = bg
    elif img.mode != 'RGB':
        img = img.convert('RGB')
    return ImageReader(img)


# --------------------------- PDF Builder ----------------------------
def _draw_pad(row: InspectionRow, items: list[ItemRow], *, title: str,
              checklist: list[tuple[int, str]], trailer: list[tuple[int, str]],
              fallback_names: list[str], with_action_and_legend: bool,
              company: str) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    c.setTitle(f"{title.title()} {form_number(row.id)}")
    W, H = A4
    left, right, bottom = 15*mm, W - 15*mm, 15*mm
    width = right - left
    y = H - 12*mm

    num_w, day_w = 8*mm, 12*mm
    item_w = width - num_w - 7*day_w
    row_h = 5*mm

    marks = {(it.item_number, it.day_of_week): status_mark(it.status) for it in items}

    def ensure(space):
        nonlocal y
        if y - space < bottom:
            c.showPage()
            y = H - 15*mm

    def text_box(label, lines, min_h):
        nonlocal y
        wrapped = []
        for ln in lines:
            wrapped.extend(simpleSplit(ln, 'Helvetica', 7, width - 4*mm) or [''])
        box_h = max(min_h, 6*mm + 3.5*mm*len(wrapped))
        if box_h <= H - 15*mm - bottom:
            ensure(box_h)
        else:
            # taller than a page: running text instead of a box
            ensure(10*mm)
            c.setFont('Helvetica-Bold', 7); c.drawString(left, y - 4*mm, label)
            y -= 7.5*mm
            for ln in wrapped:
                ensure(4*mm)
                c.setFont('Helvetica', 7)
                c.drawString(left + 2*mm, y, ln)
                y -= 3.5*mm
            y -= 2*mm
            return
        c.rect(left, y - box_h, width, box_h)
        c.setFont('Helvetica-Bold', 7); c.drawString(left + 2*mm, y - 4*mm, label)
        c.setFont('Helvetica', 7)
        ty = y - 7.5*mm
        for ln in wrapped:
            c.drawString(left + 2*mm, ty, ln)
            ty -= 3.5*mm
        y -= box_h + 2*mm

    # Header
    c.setFont('Helvetica-Bold', 10)
    c.drawRightString(right, y, form_number(row.id))
    y -= 6*mm
    c.setFont('Helvetica-Bold', 14)
    c.drawCentredString(W/2, y, company.upper())
    y -= 7*mm
    c.setFont('Helvetica-Bold', 12)
    c.drawCentredString(W/2, y, title)
    y -= 6*mm

    # Reg / mileage / driver
    top_h = 9*mm
    x = left
    for label, value, frac in (('REG NO.', row.vehicle_reg, 0.3),
                               ('MILEAGE', '' if row.mileage is None else str(row.mileage), 0.3),
                               ('DRIVER NAME', row.employee_name, 0.4)):
        w = width * frac
        c.rect(x, y - top_h, w, top_h)
        c.setFont('Helvetica-Bold', 6); c.drawString(x + 1.5*mm, y - 3*mm, label)
        c.setFont('Helvetica', 9); c.drawString(x + 1.5*mm, y - 7.5*mm, value or '')
        x += w
    y -= top_h

    # Week ending + day columns
    week_h = 7*mm
    label_w = num_w + item_w
    c.rect(left, y - week_h, label_w, week_h)
    c.setFont('Helvetica-Bold', 6); c.drawString(left + 1.5*mm, y - 3*mm, 'WEEK ENDING')
    c.setFont('Helvetica', 8)
    c.drawString(left + 25*mm, y - 3*mm, row.week_ending.strftime('%d/%m/%Y') if row.week_ending else '')
    for i, day in enumerate(DAY_HEADERS):
        dx = left + label_w + i*day_w
        c.rect(dx, y - week_h, day_w, week_h)
        c.setFont('Helvetica-Bold', 7); c.drawCentredString(dx + day_w/2, y - 4.5*mm, day)
    y -= week_h

    def checklist_row(number, description):
        nonlocal y
        ensure(row_h)
        c.rect(left, y - row_h, num_w, row_h)
        c.rect(left + num_w, y - row_h, item_w, row_h)
        c.setFont('Helvetica-Bold', 7); c.drawCentredString(left + num_w/2, y - 3.5*mm, f"{number:02d}")
        c.setFont('Helvetica', 7); c.drawString(left + num_w + 1.5*mm, y - 3.5*mm, description[:70])
        c.setFont('Helvetica-Bold', 9)
        for day in range(1, 8):
            dx = left + label_w + (day - 1)*day_w
            c.rect(dx, y - row_h, day_w, row_h)
            mark = marks.get((number, day), '')
            if mark:
                c.drawCentredString(dx + day_w/2, y - 3.7*mm, mark)
        y -= row_h

    for number, description in checklist:
        checklist_row(number, description)

    if trailer:
        ensure(row_h)
        c.rect(left, y - row_h, width, row_h)
        c.setFont('Helvetica-Bold', 7); c.drawString(left + 1.5*mm, y - 3.5*mm, 'TRAILER')
        y -= row_h
        for number, description in trailer:
            checklist_row(number, description)

    # Checked by (+ signature)
    sig = _signature_image(row.signature_data) if row.signature_data else None
    cb_h = 12*mm if sig else 6*mm
    ensure(cb_h)
    c.rect(left, y - cb_h, width, cb_h)
    c.setFont('Helvetica', 7); c.drawString(left + 2*mm, y - 4*mm, f"Checked by: {row.employee_name or ''}")
    if sig:
        c.drawImage(sig, right - 52*mm, y - cb_h + 1*mm, width=50*mm, height=cb_h - 2*mm,
                    preserveAspectRatio=True, anchor='e')
    y -= cb_h + 2*mm

    text_box('DEFECTS/COMMENTS', defect_lines(items, fallback_names) or [DOTTED], 14*mm)

    if with_action_and_legend:
        text_box('ACTION TAKEN', [row.action_taken] if row.action_taken else [DOTTED], 12*mm)
        ensure(16*mm)
        c.setFont('Helvetica-Bold', 7)
        c.drawString(left, y - 3*mm, 'USE THE FOLLOWING:-  / = IN ORDER    X = REQUIRES ATTENTION    O = N/A')
        c.setFont('Helvetica', 6)
        c.drawString(left, y - 7*mm, 'Any apparent defect which may affect safe operation of the vehicle or may lead to '
                                     'damage or imminent breakdown')
        c.drawString(left, y - 10*mm, 'must be reported to your supervisor/workshop immediately')
        c.setFont('Helvetica-Oblique', 6)
        c.drawString(left, y - 14*mm, 'Distribution: White - Workshop Manager.    Yellow - Retained in Vehicle')
        y -= 16*mm

    c.showPage(); c.save()
    pdf = buf.getvalue()
    buf.close()
    return pdf


def render_standard_inspection(row: InspectionRow, items: list[ItemRow],
                               company: str = DEFAULT_COMPANY_NAME) -> bytes:
    """Truck pad: fixed checklist, trailer section, action taken and legend."""
    checklist = list(enumerate(TRUCK_CHECKLIST_ITEMS, start=1))
    first_trailer = len(TRUCK_CHECKLIST_ITEMS) + 1
    trailer = list(enumerate(TRAILER_CHECKLIST_ITEMS, start=first_trailer))
    return _draw_pad(row, items, title='VEHICLE INSPECTION PAD',
                     checklist=checklist, trailer=trailer,
                     fallback_names=TRUCK_CHECKLIST_ITEMS + TRAILER_CHECKLIST_ITEMS,
                     with_action_and_legend=True, company=company)


def render_van_inspection(row: InspectionRow, items: list[ItemRow],
                          company: str = DEFAULT_COMPANY_NAME) -> bytes:
    """Van pad: one row per item number recorded on the inspection."""
    seen = {}
    for it in items:
        name = it.description
        if not name and 0 < it.item_number <= len(VAN_CHECKLIST_ITEMS):
            name = VAN_CHECKLIST_ITEMS[it.item_number - 1]
        seen.setdefault(it.item_number, name)
    checklist = sorted(seen.items())
    return _draw_pad(row, items, title='COMPANY VAN INSPECTION PAD',
                     checklist=checklist, trailer=[],
                     fallback_names=VAN_CHECKLIST_ITEMS,
                     with_action_and_legend=False, company=company)


RENDERERS = {
    'standard': render_standard_inspection,
    'van': render_van_inspection,
}


def render_inspection(row: InspectionRow, items: list[ItemRow],
                      company: str = DEFAULT_COMPANY_NAME) -> bytes:
    """Render one inspection to PDF bytes using the layout for its vehicle."""
    return RENDERERS[template_for(row.vehicle_category)](row, items, company=company)
