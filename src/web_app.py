import io
import logging
import os
import shutil
import tempfile

import duckdb
from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

from arithmetic import check_arithmetic
from exporter import Exporter
from logging_config import setup_logging
from models import MatchMode, ReconConfig, Side, PROXIMITY_TOLERANCE
from recon_engine import LEFT_TABLE, RIGHT_TABLE, ReconEngine
from review import identify_review_cases

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

app = Flask(__name__)

# Configure upload folder
UPLOAD_FOLDER = os.environ.get(
    "RECON_UPLOAD_FOLDER", os.path.join(tempfile.gettempdir(), "recon_uploads")
)
os.makedirs(UPLOAD_FOLDER, exist_ok=True)

app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
app.config['MAX_CONTENT_LENGTH'] = int(
    os.environ.get("RECON_MAX_CONTENT_LENGTH", 16 * 1024 * 1024)  # 16MB max limit
)


class RequestError(ValueError):
    """Bad upload or form field."""


def _save_upload(field: str, directory: str) -> str:
    file = request.files.get(field)
    if file is None or file.filename == '':
        raise RequestError(f"Missing file '{field}'")
    filename = secure_filename(file.filename) or field
    path = os.path.join(directory, f"{field}_{filename}")
    file.save(path)
    return path


def _required(form, field: str) -> str:
    value = (form.get(field) or '').strip()
    if not value:
        raise RequestError(f"Missing form field '{field}'")
    return value


def _optional(form, field: str):
    value = (form.get(field) or '').strip()
    return value or None


def _config_from_form(form) -> ReconConfig:
    try:
        mode = MatchMode(form.get('mode') or MatchMode.KEY.value)
    except ValueError:
        raise RequestError(f"Unknown mode '{form.get('mode')}'")
    try:
        tolerance = float(form.get('tolerance') or PROXIMITY_TOLERANCE)
    except ValueError:
        raise RequestError(f"Invalid tolerance '{form.get('tolerance')}'")

    if mode is MatchMode.KEY:
        key_left = _required(form, 'key_col_left')
        key_right = _required(form, 'key_col_right')
    else:
        key_left = _optional(form, 'key_col_left')
        key_right = _optional(form, 'key_col_right')

    return ReconConfig(
        key_col_left=key_left,
        key_col_right=key_right,
        amount_col_left=_optional(form, 'amount_col_left'),
        amount_col_right=_optional(form, 'amount_col_right'),
        mode=mode,
        amount_tolerance=tolerance,
    )


def _arithmetic_columns(form):
    columns = [_optional(form, f) for f in ('base_col', 'commission_col', 'net_col')]
    if not any(columns):
        return None
    if not all(columns):
        raise RequestError("base_col, commission_col and net_col must be given together")
    return columns


def _side_of(form) -> Side:
    try:
        return Side(form.get('side') or Side.LEFT.value)
    except ValueError:
        raise RequestError(f"Unknown side '{form.get('side')}'")


def _error(message: str, status: int = 400):
    return jsonify({"error": message}), status


def _run(handler):
    """Run a request handler in its own upload directory and engine."""
    request_dir = tempfile.mkdtemp(dir=app.config['UPLOAD_FOLDER'])
    engine = ReconEngine()
    try:
        return handler(engine, request_dir)
    except ValueError as e:
        logger.warning("Rejected request: %s", e)
        return _error(str(e))
    except duckdb.Error as e:
        logger.warning("Could not read upload: %s", e)
        return _error(f"Could not read file: {e}")
    finally:
        engine.close()
        shutil.rmtree(request_dir, ignore_errors=True)


@app.route('/health')
def health():
    return jsonify({"status": "ok"})


@app.route('/reconcile', methods=['POST'])
def reconcile_files():
    def handler(engine, request_dir):
        config = _config_from_form(request.form)
        engine.load_file(_save_upload('left', request_dir), LEFT_TABLE)
        engine.load_file(_save_upload('right', request_dir), RIGHT_TABLE)

        result = engine.reconcile(config)
        payload = result.to_dict()
        payload["totals"] = {
            "left": engine.get_column_sum(LEFT_TABLE, result.config.amount_col_left),
            "right": engine.get_column_sum(RIGHT_TABLE, result.config.amount_col_right),
        }
        payload["review_cases"] = [c.to_dict() for c in identify_review_cases(result)]
        return jsonify(payload)

    return _run(handler)


@app.route('/reconcile/export', methods=['POST'])
def reconcile_export():
    def handler(engine, request_dir):
        config = _config_from_form(request.form)
        arithmetic_cols = _arithmetic_columns(request.form)
        engine.load_file(_save_upload('left', request_dir), LEFT_TABLE)
        engine.load_file(_save_upload('right', request_dir), RIGHT_TABLE)

        result = engine.reconcile(config)
        issues = []
        if arithmetic_cols:
            issues = engine.check_arithmetic(LEFT_TABLE, *arithmetic_cols)

        output_path = os.path.join(request_dir, 'reconcile-summary.xlsx')
        Exporter().export_workbook(
            result,
            output_path,
            arithmetic_issues=issues,
            review_cases=identify_review_cases(result, issues),
        )
        with open(output_path, 'rb') as fh:
            data = io.BytesIO(fh.read())
        return send_file(
            data,
            mimetype=XLSX_MIMETYPE,
            as_attachment=True,
            download_name='reconcile-summary.xlsx',
        )

    return _run(handler)


@app.route('/arithmetic', methods=['POST'])
def arithmetic_check():
    def handler(engine, request_dir):
        columns = _arithmetic_columns(request.form)
        if not columns:
            raise RequestError("base_col, commission_col and net_col are required")
        engine.load_file(_save_upload('file', request_dir), LEFT_TABLE)

        side = _side_of(request.form)
        records = engine.fetch_records(LEFT_TABLE, side)
        issues = check_arithmetic(records, *columns, side=side)
        return jsonify({
            "rows_checked": len(records),
            "issues": [i.to_dict() for i in issues],
        })

    return _run(handler)


if __name__ == '__main__':
    setup_logging(os.environ.get("RECON_LOG_LEVEL", "INFO"))
    app.run(debug=True)
