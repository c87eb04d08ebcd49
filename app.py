import os
import traceback
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request

# Load environment variables from .env file before the services read their settings
load_dotenv()

from database import init_db
from data_paths import ensure_data_root
from services.import_common import ImportContext, import_deadline, submit_import
from services.invoice_ninja_import import run_invoice_ninja_import
from services.lubelog_import import run_lubelog_import

# --- App Initialization ---
# A commit that started before the deadline may still be finishing when it passes.
# No import commits after its deadline, so this only covers that last commit.
IMPORT_COMMIT_GRACE_SECONDS = 5.0

app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False

_db_bootstrapped = False


@app.before_request
def _ensure_database_ready():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        init_db()
        _db_bootstrapped = True
    except Exception as exc:  # pragma: no cover
        app.logger.exception("Failed to initialize database before request: %s", exc)


def get_auth_context() -> Optional[ImportContext]:
    """Return the tenant context established by the upstream auth layer.

    The authentication proxy either stores an :class:`ImportContext` on
    ``flask.g`` or forwards the resolved identity as request headers.
    """
    context = g.get('auth_context')
    if isinstance(context, ImportContext):
        return context
    organization_id = request.headers.get('X-Organization-Id', '').strip()
    user_id = request.headers.get('X-User-Id', '').strip()
    if not organization_id or not user_id:
        return None
    return ImportContext(organization_id=organization_id, user_id=user_id)


def _read_archive_upload() -> bytes:
    if 'file' in request.files:
        return request.files['file'].read()
    return request.get_data(cache=False)


def _run_backup_import(label, pipeline):
    context = get_auth_context()
    if context is None:
        return jsonify({"error": "Unauthorized"}), 401

    archive = _read_archive_upload()
    app.logger.info("[%s] Received %d byte archive for %s", label, len(archive), context.organization_id)

    deadline = import_deadline()
    future = submit_import(pipeline, archive, context, deadline=deadline)
    try:
        remaining = max(deadline - time.monotonic(), 0.0)
        outcome = future.result(timeout=remaining + IMPORT_COMMIT_GRACE_SECONDS)
    except FutureTimeoutError:
        app.logger.error("[%s] Import for %s did not finish in time", label, context.organization_id)
        return jsonify({"error": "Import failed"}), 500
    except Exception as exc:
        app.logger.error(f"[{label}] Unexpected import error: {exc}")
        app.logger.error(traceback.format_exc())
        return jsonify({"error": "Import failed"}), 500

    return jsonify(outcome.to_payload()), outcome.status_code


@app.route('/api/backup/import-lubelog', methods=['POST'])
def import_lubelog():
    """Import a LubeLog backup ZIP sent as the request body."""
    return _run_backup_import('import-lubelog', run_lubelog_import)


@app.route('/api/backup/import-invoice-ninja', methods=['POST'])
def import_invoice_ninja():
    """Import an Invoice Ninja export ZIP sent as the request body."""
    return _run_backup_import('import-invoice-ninja', run_invoice_ninja_import)


def main():
    port = int(os.getenv('GARAGELEDGER_PORT', '5002'))
    ensure_data_root()
    init_db()
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    main()
