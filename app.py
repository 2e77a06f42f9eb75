# app.py
import os
import logging
import datetime as dt
from functools import partial, wraps
from typing import Optional

import click
from flask import (
    Flask, request, redirect, url_for, render_template_string,
    session, flash, abort, jsonify, make_response, Response, stream_with_context
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload
from werkzeug.security import generate_password_hash, check_password_hash

from bulk_export import (
    MAX_INSPECTIONS_PER_PDF, BulkExportError, Caller, ExportComplete, ExportProgress,
    ExportStarted, FetchFailure, build_bulk_export, iter_bulk_export, parse_date_range,
    stream_bulk_export,
)
from inspection_pdf import (
    DEFAULT_COMPANY_NAME, TRAILER_CHECKLIST_ITEMS, TRUCK_CHECKLIST_ITEMS, VAN_CHECKLIST_ITEMS,
    InspectionRow, ItemRow, render_inspection, template_for,
)
from inspection_reports import (
    XLSX_CONTENT_TYPE, ComplianceRow, DefectRow, compliance_workbook, defects_workbook,
    parse_optional_range, report_file_name,
)

# --------------------------- App / Config ---------------------------
app = Flask(__name__)

app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret')
app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv(
    'DATABASE_URL', 'sqlite:///app.db'
).replace('postgres://', 'postgresql://')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

app.config['COMPANY_NAME'] = os.getenv('COMPANY_NAME', DEFAULT_COMPANY_NAME)
app.config['BULK_PDF_CHUNK_SIZE'] = int(os.getenv('BULK_PDF_CHUNK_SIZE', str(MAX_INSPECTIONS_PER_PDF)))
app.config['BULK_PDF_TIMEOUT'] = float(os.getenv('BULK_PDF_TIMEOUT', '300'))  # seconds, 0 = no limit

ADMIN_EMAIL = os.getenv('ADMIN_EMAIL', 'admin@example.com')
ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', 'admin123')
DRIVER_PASSWORD = os.getenv('DRIVER_PASSWORD', 'driver123')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
app.logger.setLevel(LOG_LEVEL)

db = SQLAlchemy(app)


def _utcnow():
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


# --------------------------- Models --------------------------------
class Role(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(40), unique=True, nullable=False)
    is_manager_admin = db.Column(db.Boolean, nullable=False, default=False)


class Profile(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    employee_id = db.Column(db.String(40))
    password_hash = db.Column(db.String(255))
    role_id = db.Column(db.Integer, db.ForeignKey('role.id'), nullable=True)
    role = db.relationship('Role', backref='profiles')

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return bool(self.password_hash) and check_password_hash(self.password_hash, password)

    @property
    def is_manager_admin(self) -> bool:
        return bool(self.role and self.role.is_manager_admin)


class VehicleCategory(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)


class Vehicle(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    reg_number = db.Column(db.String(20), unique=True, nullable=False)
    vehicle_type = db.Column(db.String(40), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey('vehicle_category.id'), nullable=True)
    category = db.relationship('VehicleCategory', backref='vehicles')


class VehicleInspection(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicle.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    week_ending = db.Column(db.Date, nullable=False, index=True)
    mileage = db.Column(db.Integer)
    status = db.Column(db.String(20), nullable=False, default='draft')  # draft/in_progress/submitted/reviewed/rejected
    action_taken = db.Column(db.Text)
    signature_data = db.Column(db.Text)  # data:image/png;base64,...
    signed_at = db.Column(db.DateTime)
    submitted_at = db.Column(db.DateTime)
    reviewed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=_utcnow)
    vehicle = db.relationship('Vehicle', backref='inspections')
    profile = db.relationship('Profile', backref='inspections')
    items = db.relationship('InspectionItem', backref='inspection', lazy=True,
                            cascade='all,delete', order_by='InspectionItem.item_number')


class InspectionItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    inspection_id = db.Column(db.Integer, db.ForeignKey('vehicle_inspection.id'), nullable=False, index=True)
    item_number = db.Column(db.Integer, nullable=False)
    day_of_week = db.Column(db.Integer, nullable=False)  # 1 = Monday
    item_description = db.Column(db.String(200), nullable=False, default='')
    status = db.Column(db.String(20), nullable=False)  # ok/attention/na
    comments = db.Column(db.Text)


# --------------------------- Record source --------------------------
def inspection_row(insp: VehicleInspection) -> InspectionRow:
    vehicle = insp.vehicle
    category = ''
    if vehicle is not None:
        category = (vehicle.category.name if vehicle.category else '') or vehicle.vehicle_type or ''
    return InspectionRow(
        id=insp.id,
        week_ending=insp.week_ending,
        status=insp.status,
        vehicle_reg=vehicle.reg_number if vehicle else '',
        vehicle_category=category,
        employee_name=insp.profile.full_name if insp.profile else '',
        mileage=insp.mileage,
        action_taken=insp.action_taken or '',
        signature_data=insp.signature_data,
    )


class SqlInspectionSource:
    """Inspections and their items, read through the app's database session."""

    def fetch_inspections(self, date_from: dt.date, date_to: dt.date) -> list[InspectionRow]:
        try:
            rows = (VehicleInspection.query
                    .options(joinedload(VehicleInspection.vehicle).joinedload(Vehicle.category),
                             joinedload(VehicleInspection.profile))
                    .filter(VehicleInspection.status != 'draft',
                            VehicleInspection.week_ending >= date_from,
                            VehicleInspection.week_ending <= date_to)
                    .order_by(VehicleInspection.week_ending.asc(), VehicleInspection.id.asc())
                    .all())
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.error(f'Error fetching inspections: {e}')
            raise FetchFailure(details=str(e)) from e
        return [inspection_row(i) for i in rows]

    def fetch_items(self, inspection_id: int) -> list[ItemRow]:
        try:
            items = (InspectionItem.query
                     .filter_by(inspection_id=inspection_id)
                     .order_by(InspectionItem.item_number.asc(), InspectionItem.day_of_week.asc())
                     .all())
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return [ItemRow(item_number=it.item_number, day_of_week=it.day_of_week,
                        description=it.item_description or '', status=it.status,
                        comments=it.comments or '')
                for it in items]

    # Excel reports cover every status (drafts included), newest week first.
    def _in_range(self, q, date_from, date_to):
        if date_from:
            q = q.filter(VehicleInspection.week_ending >= date_from)
        if date_to:
            q = q.filter(VehicleInspection.week_ending <= date_to)
        return q

    def fetch_defects(self, date_from: Optional[dt.date], date_to: Optional[dt.date]) -> list[DefectRow]:
        try:
            q = (db.session.query(InspectionItem, VehicleInspection)
                 .join(VehicleInspection, InspectionItem.inspection_id == VehicleInspection.id)
                 .filter(InspectionItem.status == 'attention'))
            pairs = (self._in_range(q, date_from, date_to)
                     .order_by(VehicleInspection.week_ending.desc(), VehicleInspection.id.asc(),
                               InspectionItem.item_number.asc(), InspectionItem.day_of_week.asc())
                     .all())
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.error(f'Error fetching defects: {e}')
            raise FetchFailure('Failed to fetch defects', details=str(e)) from e
        return [DefectRow(
            inspection_id=insp.id, week_ending=insp.week_ending, inspection_status=insp.status,
            vehicle_reg=insp.vehicle.reg_number if insp.vehicle else '',
            vehicle_type=insp.vehicle.vehicle_type if insp.vehicle else '',
            inspector=insp.profile.full_name if insp.profile else '',
            item_number=it.item_number, day_of_week=it.day_of_week,
            description=it.item_description or '', comments=it.comments or '',
        ) for it, insp in pairs]

    def fetch_compliance(self, date_from: Optional[dt.date], date_to: Optional[dt.date]) -> list[ComplianceRow]:
        try:
            q = VehicleInspection.query.options(joinedload(VehicleInspection.vehicle),
                                                joinedload(VehicleInspection.profile))
            rows = (self._in_range(q, date_from, date_to)
                    .order_by(VehicleInspection.week_ending.desc(), VehicleInspection.id.asc())
                    .all())
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.error(f'Error fetching inspections: {e}')
            raise FetchFailure(details=str(e)) from e
        return [ComplianceRow(
            inspection_id=i.id, week_ending=i.week_ending, status=i.status,
            vehicle_reg=i.vehicle.reg_number if i.vehicle else '',
            vehicle_type=i.vehicle.vehicle_type if i.vehicle else '',
            inspector=i.profile.full_name if i.profile else '',
            employee_id=(i.profile.employee_id if i.profile else '') or '',
            submitted_at=i.submitted_at, reviewed_at=i.reviewed_at,
        ) for i in rows]


def _export_options() -> dict:
    return {
        'chunk_size': app.config['BULK_PDF_CHUNK_SIZE'],
        'timeout': app.config.get('BULK_PDF_TIMEOUT') or None,
        'render': partial(render_inspection, company=app.config['COMPANY_NAME']),
    }


# --------------------------- Helpers --------------------------------
def current_profile():
    pid = session.get('profile_id')
    if pid is None:
        return None
    return db.session.get(Profile, pid)


def caller_for(profile):
    if profile is None:
        return None
    return Caller(profile_id=profile.id, is_manager_admin=profile.is_manager_admin)


def login_required(fn):
    @wraps(fn)
    def _wrap(*a, **kw):
        if current_profile() is None:
            return redirect(url_for('login', next=request.path))
        return fn(*a, **kw)
    return _wrap


def manager_required(fn):
    @wraps(fn)
    def _wrap(*a, **kw):
        profile = current_profile()
        if profile is None:
            return redirect(url_for('login', next=request.path))
        if not profile.is_manager_admin:
            abort(403)
        return fn(*a, **kw)
    return _wrap


# --------------------------- Routes (Auth) --------------------------
@app.route('/')
def home():
    profile = current_profile()
    if profile is None:
        return redirect(url_for('login'))
    return redirect(url_for('reports') if profile.is_manager_admin else url_for('inspections'))


@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        email = (request.form.get('email') or '').strip().lower()
        profile = Profile.query.filter_by(email=email).first()
        if profile and profile.check_password(request.form.get('password') or ''):
            session['profile_id'] = profile.id
            app.logger.info(f'{profile.email} signed in')
            nxt = request.args.get('next') or ''
            if not nxt.startswith('/') or nxt.startswith('//'):
                nxt = url_for('home')
            return redirect(nxt)
        flash('Wrong email or password')
    return render_template_string(TPL_LOGIN)


@app.route('/logout')
def logout():
    session.pop('profile_id', None)
    return redirect(url_for('login'))


# --------------------------- Inspections / Reports ------------------
@app.route('/inspections')
@login_required
def inspections():
    profile = current_profile()
    q = VehicleInspection.query.options(joinedload(VehicleInspection.vehicle))
    if not profile.is_manager_admin:
        q = q.filter_by(user_id=profile.id)
    rows = q.order_by(VehicleInspection.week_ending.desc(), VehicleInspection.id.desc()).limit(200).all()
    return render_template_string(TPL_INSPECTIONS, inspections=rows, profile=profile)


@app.route('/reports')
@manager_required
def reports():
    today = dt.date.today()
    return render_template_string(
        TPL_REPORTS,
        date_from=(today - dt.timedelta(days=28)).isoformat(),
        date_to=today.isoformat(),
    )


@app.route('/api/reports/inspections/bulk-pdf', methods=['GET'])
def bulk_pdf_download():
    try:
        date_from, date_to = parse_date_range(request.args.get('dateFrom'), request.args.get('dateTo'))
        artifact = build_bulk_export(date_from, date_to, caller_for(current_profile()),
                                     SqlInspectionSource(), **_export_options())
    except BulkExportError as e:
        if e.status >= 500:
            app.logger.exception('Bulk PDF generation error')
        return jsonify(e.to_message()), e.status
    except Exception as e:
        app.logger.exception('Bulk PDF generation error')
        return jsonify({'error': 'Failed to generate PDFs', 'details': str(e)}), 500

    resp = make_response(artifact.data)
    resp.headers['Content-Type'] = artifact.content_type
    resp.headers['Content-Disposition'] = f'attachment; filename="{artifact.file_name}"'
    return resp


@app.route('/api/reports/inspections/bulk-pdf', methods=['POST'])
def bulk_pdf_stream():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    caller = caller_for(current_profile())
    lines = stream_bulk_export(body.get('dateFrom'), body.get('dateTo'), caller,
                               SqlInspectionSource(), **_export_options())
    return Response(
        stream_with_context(lines),
        content_type='text/plain; charset=utf-8',
        headers={'Cache-Control': 'no-cache', 'Connection': 'keep-alive'},
    )


@app.route('/api/inspections/<int:inspection_id>/pdf')
def inspection_pdf(inspection_id):
    profile = current_profile()
    if profile is None:
        return jsonify({'error': 'Unauthorized'}), 401
    insp = db.session.get(VehicleInspection, inspection_id)
    if insp is None:
        return jsonify({'error': 'Inspection not found'}), 404
    if not profile.is_manager_admin and insp.user_id != profile.id:
        return jsonify({'error': 'Forbidden'}), 403

    items = SqlInspectionSource().fetch_items(insp.id)
    if not items:
        return jsonify({'error': 'Inspection has no checklist items'}), 404
    row = inspection_row(insp)
    pdf = render_inspection(row, items, company=app.config['COMPANY_NAME'])

    resp = make_response(pdf)
    resp.headers['Content-Type'] = 'application/pdf'
    resp.headers['Content-Disposition'] = (
        f'attachment; filename="Inspection_{row.vehicle_reg or insp.id}_{row.week_ending.isoformat()}.pdf"'
    )
    return resp


def _excel_report(fetch, build, prefix: str, empty_message: str):
    """Shared flow of the Excel reports: auth, optional range, query, workbook."""
    profile = current_profile()
    if profile is None:
        return jsonify({'error': 'Unauthorized'}), 401
    if not profile.is_manager_admin:
        return jsonify({'error': 'Forbidden'}), 403
    try:
        date_from, date_to = parse_optional_range(request.args.get('dateFrom'), request.args.get('dateTo'))
        rows = fetch(date_from, date_to)
    except BulkExportError as e:
        return jsonify(e.to_message()), e.status
    if not rows:
        return jsonify({'error': empty_message}), 404
    try:
        data = build(rows)
    except Exception:
        app.logger.exception(f'Error generating {prefix} report')
        return jsonify({'error': 'Failed to generate report'}), 500

    resp = make_response(data)
    resp.headers['Content-Type'] = XLSX_CONTENT_TYPE
    resp.headers['Content-Disposition'] = f'attachment; filename="{report_file_name(prefix, date_from, date_to)}"'
    return resp


@app.route('/api/reports/inspections/defects')
def defects_report():
    return _excel_report(SqlInspectionSource().fetch_defects, defects_workbook,
                         'Defects_Report', 'No defects found for the specified criteria')


@app.route('/api/reports/inspections/compliance')
def compliance_report():
    return _excel_report(SqlInspectionSource().fetch_compliance, compliance_workbook,
                         'Inspection_Compliance', 'No inspections found for the specified criteria')


# --------------------------- CLI ------------------------------------
def seed_reference_data():
    """Roles, categories, two vehicles, the admin manager and a demo driver."""
    roles = {}
    for name, is_manager in (('manager', True), ('driver', False)):
        roles[name] = Role.query.filter_by(name=name).first() or Role(name=name, is_manager_admin=is_manager)
        db.session.add(roles[name])
    cats = {}
    for name in ('Truck', 'Van'):
        cats[name] = VehicleCategory.query.filter_by(name=name).first() or VehicleCategory(name=name)
        db.session.add(cats[name])
    for reg, vtype, cat in (('AB12CDE', 'truck', 'Truck'), ('XY34ZFG', 'van', 'Van')):
        if not Vehicle.query.filter_by(reg_number=reg).first():
            db.session.add(Vehicle(reg_number=reg, vehicle_type=vtype, category=cats[cat]))
    for full_name, email, password, role in (('Fleet Admin', ADMIN_EMAIL, ADMIN_PASSWORD, 'manager'),
                                             ('Demo Driver', 'driver@example.com', DRIVER_PASSWORD, 'driver')):
        if not Profile.query.filter_by(email=email.lower()).first():
            p = Profile(full_name=full_name, email=email.lower(), role=roles[role])
            p.set_password(password)
            db.session.add(p)
    db.session.commit()


def seed_demo_inspections(weeks: int) -> int:
    """Submitted inspections with a full week of checks for every vehicle."""
    driver = Profile.query.filter_by(email='driver@example.com').first()
    today = dt.date.today()
    last_sunday = today - dt.timedelta(days=(today.weekday() + 1) % 7)
    created = 0
    for vehicle in Vehicle.query.order_by(Vehicle.reg_number).all():
        kind = template_for((vehicle.category.name if vehicle.category else '') or vehicle.vehicle_type)
        names = VAN_CHECKLIST_ITEMS if kind == 'van' else TRUCK_CHECKLIST_ITEMS + TRAILER_CHECKLIST_ITEMS
        for w in range(weeks):
            week_ending = last_sunday - dt.timedelta(weeks=w)
            if VehicleInspection.query.filter_by(vehicle_id=vehicle.id, week_ending=week_ending).first():
                continue
            insp = VehicleInspection(vehicle=vehicle, profile=driver, week_ending=week_ending,
                                     mileage=40000 + 350 * (weeks - w), status='submitted',
                                     submitted_at=_utcnow())
            for number, name in enumerate(names, start=1):
                for day in range(1, 8):
                    flagged = (number * 7 + day + w) % 41 == 0
                    insp.items.append(InspectionItem(
                        item_number=number, day_of_week=day, item_description=name,
                        status='attention' if flagged else 'ok',
                        comments='Reported to workshop' if flagged else None,
                    ))
            db.session.add(insp)
            created += 1
    db.session.commit()
    return created


@app.cli.command('init-db')
@click.option('--demo-weeks', default=0, show_default=True, help='Also create N weeks of demo inspections.')
def init_db(demo_weeks):
    db.create_all()
    seed_reference_data()
    if demo_weeks:
        n = seed_demo_inspections(demo_weeks)
        click.echo(f'Created {n} demo inspection(s)')
    click.echo('DB initialised ✅')


@app.cli.command('export-inspections')
@click.argument('date_from')
@click.argument('date_to')
@click.option('--email', required=True, help='Manager account to run the export as.')
@click.option('--out', 'out_dir', default='.', show_default=True, type=click.Path(file_okay=False))
def export_inspections(date_from, date_to, email, out_dir):
    """Write the bulk inspection PDF (or ZIP) for a week-ending range."""
    profile = Profile.query.filter_by(email=email.strip().lower()).first()
    artifact = None
    try:
        for event in iter_bulk_export(date_from, date_to, caller_for(profile),
                                      SqlInspectionSource(), **_export_options()):
            if isinstance(event, ExportStarted):
                click.echo(f'{event.total} inspection(s) in {event.num_parts} part(s)')
            elif isinstance(event, ExportProgress):
                click.echo(f'\r[{event.current}/{event.total}] part {event.current_part}/{event.total_parts}', nl=False)
            elif isinstance(event, ExportComplete):
                artifact = event.artifact
    except BulkExportError as e:
        raise click.ClickException(f'{e.message} ({e.details})' if e.details else e.message)

    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, artifact.file_name)
    with open(path, 'wb') as f:
        f.write(artifact.data)
    click.echo(f'\nWrote {path}')


# --------------------------- Templates ------------------------------
TPL_BASE = r"""
<!doctype html>
<html lang="en" data-bs-theme="dark">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{{ title or 'Fleet Inspections' }}</title>
  <style>
    body{margin:0;background:#0f0f0f;color:#e9e9e9;font-family:system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif}
    .wrap{max-width:900px;margin:0 auto;padding:16px}
    .card{background:#1a1a1a;border:1px solid #2b2b2b;border-radius:12px;margin:12px 0;padding:16px}
    input{width:100%;padding:10px;border-radius:8px;border:1px solid #2d2d2d;background:#0f0f0f;color:#e9e9e9}
    label{display:block;margin:6px 0 4px;color:#bbb}
    .row{display:flex;gap:12px;flex-wrap:wrap}
    .col{flex:1 1 260px}
    .btn{background:#0ea5e9;color:white;border:0;border-radius:10px;padding:10px 14px;cursor:pointer;text-decoration:none}
    .btn.alt{background:#2e2e2e}
    .bar{height:10px;border-radius:999px;background:#2e2e2e;overflow:hidden;margin-top:12px}
    .bar > div{height:100%;width:0;background:#0ea5e9;transition:width .2s}
    small{color:#9a9a9a}
  </style>
</head>
<body>
<div class="wrap">
  {% with msgs = get_flashed_messages() %}
  {% if msgs %}<div class="card" style="border-color:#ef4444;background:#1e1b1b">
    {% for m in msgs %}<div>{{ m }}</div>{% endfor %}
  </div>{% endif %}{% endwith %}
  {{ content|safe }}
</div>
</body></html>
"""

TPL_LOGIN = """
{% set title='Sign in' %}
{% set content %}
<div class="card">
  <h3>Sign in</h3>
  <form method="post">
    <label>Email</label>
    <input name="email" type="email" autocomplete="username" required>
    <label>Password</label>
    <input name="password" type="password" autocomplete="current-password" required>
    <div style="margin-top:10px"><button class="btn">Sign in</button></div>
  </form>
</div>
{% endset %}
""" + TPL_BASE

TPL_INSPECTIONS = """
{% set title='Inspections' %}
{% set content %}
<div class="card">
  <div style="display:flex;justify-content:space-between;align-items:center">
    <h3>{{ 'Recent inspections' if profile.is_manager_admin else 'My inspections' }}</h3>
    <div>
      {% if profile.is_manager_admin %}<a href="{{ url_for('reports') }}" class="btn">Reports</a>{% endif %}
      <a href="{{ url_for('logout') }}" class="btn alt">Sign out</a>
    </div>
  </div>
  <table style="width:100%;border-collapse:collapse">
    <tr><th align="left">Week ending</th><th align="left">Vehicle</th><th align="left">Status</th><th></th></tr>
    {% for i in inspections %}
    <tr>
      <td>{{ i.week_ending.strftime('%d/%m/%Y') }}</td>
      <td>{{ i.vehicle.reg_number if i.vehicle else '' }}</td>
      <td>{{ i.status }}</td>
      <td><a href="{{ url_for('inspection_pdf', inspection_id=i.id) }}">PDF</a></td>
    </tr>
    {% else %}
    <tr><td colspan="4"><small>No inspections yet.</small></td></tr>
    {% endfor %}
  </table>
</div>
{% endset %}
""" + TPL_BASE

TPL_REPORTS = """
{% set title='Inspection reports' %}
{% set content %}
<div class="card">
  <div style="display:flex;justify-content:space-between;align-items:center">
    <h3>All inspections (PDF)</h3>
    <a href="{{ url_for('logout') }}" class="btn alt">Sign out</a>
  </div>
  <form id="bulk">
    <div class="row">
      <div class="col"><label>Week ending from</label><input type="date" name="dateFrom" value="{{ date_from }}" required></div>
      <div class="col"><label>Week ending to</label><input type="date" name="dateTo" value="{{ date_to }}" required></div>
    </div>
    <div style="margin-top:12px">
      <button class="btn" id="go">Download</button>
      <button type="button" class="btn alt" data-report="{{ url_for('defects_report') }}">Defects (Excel)</button>
      <button type="button" class="btn alt" data-report="{{ url_for('compliance_report') }}">Compliance (Excel)</button>
    </div>
  </form>
  <div class="bar"><div id="bar"></div></div>
  <small id="status">Large ranges are split into parts and zipped.</small>
</div>
<script>
  const form = document.getElementById('bulk');
  const bar = document.getElementById('bar');
  const statusEl = document.getElementById('status');
  function download(msg){
    const raw = atob(msg.data); const bytes = new Uint8Array(raw.length);
    for (let i = 0; i < raw.length; i++) bytes[i] = raw.charCodeAt(i);
    const a = document.createElement('a');
    a.href = URL.createObjectURL(new Blob([bytes], {type: msg.contentType}));
    a.download = msg.fileName; a.click();
  }
  document.querySelectorAll('[data-report]').forEach((btn) => btn.addEventListener('click', async () => {
    const qs = new URLSearchParams({dateFrom: form.dateFrom.value, dateTo: form.dateTo.value});
    const res = await fetch(btn.dataset.report + '?' + qs);
    if (!res.ok) {
      const err = await res.json().catch(() => ({error: res.statusText}));
      alert(err.error + (err.details ? '\\n' + err.details : ''));
      return;
    }
    const m = /filename="([^"]+)"/.exec(res.headers.get('Content-Disposition') || '');
    const a = document.createElement('a');
    a.href = URL.createObjectURL(await res.blob());
    a.download = m ? m[1] : 'report.xlsx'; a.click();
  }));
  form.addEventListener('submit', async (ev) => {
    ev.preventDefault();
    document.getElementById('go').disabled = true;
    bar.style.width = '0';
    let terminal = null;
    try {
      const res = await fetch("{{ url_for('bulk_pdf_stream') }}", {
        method: 'POST', headers: {'Content-Type': 'application/json'},
        body: JSON.stringify({dateFrom: form.dateFrom.value, dateTo: form.dateTo.value})
      });
      const reader = res.body.getReader(); const dec = new TextDecoder(); let buf = '';
      while (true) {
        const {value, done} = await reader.read();
        if (done) break;
        buf += dec.decode(value, {stream: true});
        const lines = buf.split('\\n'); buf = lines.pop();
        for (const line of lines) {
          if (!line.trim()) continue;
          const msg = JSON.parse(line);
          if (msg.error) { terminal = msg; alert(msg.error + (msg.details ? '\\n' + msg.details : '')); }
          else if (msg.type === 'init') statusEl.textContent = `Preparing ${msg.total} inspection(s) in ${msg.numParts} part(s)…`;
          else if (msg.type === 'progress') {
            bar.style.width = (100 * msg.current / msg.total) + '%';
            statusEl.textContent = `${msg.current} / ${msg.total} (part ${msg.currentPart} of ${msg.totalParts})`;
          }
          else if (msg.type === 'complete') { terminal = msg; statusEl.textContent = msg.fileName; download(msg); }
        }
      }
      if (!terminal) alert('Export stopped before it finished. Please try again.');
    } catch (e) {
      alert('Export failed: ' + e);
    } finally {
      document.getElementById('go').disabled = false;
    }
  });
</script>
{% endset %}
""" + TPL_BASE


# --------------------------- Entrypoint -----------------------------
if __name__ == '__main__':
    port = int(os.getenv('PORT', '5001'))
    app.run(host='0.0.0.0', port=port)
