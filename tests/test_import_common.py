import time

import pytest

from services.import_common import (
    BackupContentError,
    BackupFormatError,
    ImportOutcome,
    ImportTimeoutError,
    check_deadline,
    import_deadline,
    run_guarded,
    unit_of_work,
)


def _vehicle_row(make='Volvo'):
    return {'make': make, 'model': '240', 'year': 1990, 'user_id': 'u', 'organization_id': 'org-1'}


def _count(conn, table):
    return conn.execute(f'SELECT COUNT(*) FROM {table}').fetchone()[0]


def test_unit_of_work_commits_all_rows(db):
    with unit_of_work(db, import_deadline(30)) as tx:
        vehicle_id = tx.insert('vehicles', _vehicle_row(), timestamped=True)
        tx.insert('notes', {'title': 'Hello', 'content': 'World', 'vehicle_id': vehicle_id})

    assert _count(db, 'vehicles') == 1
    assert _count(db, 'notes') == 1
    created_at = db.execute('SELECT created_at FROM vehicles').fetchone()[0]
    assert created_at.endswith('+00:00')


def test_unit_of_work_rolls_back_on_error(db):
    with pytest.raises(RuntimeError, match='half way'):
        with unit_of_work(db, import_deadline(30)) as tx:
            tx.insert('vehicles', _vehicle_row())
            tx.insert('vehicles', _vehicle_row('Saab'))
            raise RuntimeError('half way')

    assert _count(db, 'vehicles') == 0


def test_unit_of_work_enforces_foreign_keys(db):
    with pytest.raises(Exception):
        with unit_of_work(db, import_deadline(30)) as tx:
            tx.insert('vehicles', _vehicle_row())
            tx.insert('notes', {'title': 'Orphan', 'vehicle_id': 'missing'})

    assert _count(db, 'vehicles') == 0


def test_deadline_passing_mid_transaction_rolls_back(db):
    with pytest.raises(ImportTimeoutError):
        with unit_of_work(db, import_deadline(0.2)) as tx:
            tx.insert('vehicles', _vehicle_row())
            time.sleep(0.3)
            tx.insert('vehicles', _vehicle_row('Saab'))

    assert _count(db, 'vehicles') == 0


def test_expired_deadline_refuses_to_open_transaction(db):
    with pytest.raises(ImportTimeoutError):
        with unit_of_work(db, time.monotonic() - 1):
            pytest.fail('body must not run once the deadline has passed')

    assert not db.in_transaction


def test_expired_deadline_blocks_commit(db):
    with pytest.raises(ImportTimeoutError):
        with unit_of_work(db, import_deadline(0.2)) as tx:
            tx.insert('vehicles', _vehicle_row())
            time.sleep(0.3)

    assert _count(db, 'vehicles') == 0


def test_check_deadline():
    check_deadline(import_deadline(30), 'extraction')
    with pytest.raises(ImportTimeoutError):
        check_deadline(time.monotonic() - 0.01, 'extraction')


def test_skip_tallies_reasons(db):
    with unit_of_work(db, import_deadline(30)) as tx:
        tx.skip('missing_attachment', 'a.pdf')
        tx.skip('missing_attachment', 'b.pdf')
        tx.skip('note_without_vehicle')

    assert tx.skipped == {'missing_attachment': 2, 'note_without_vehicle': 1}


def test_run_guarded_success_payload():
    outcome = run_guarded('test', lambda: {'vehicles': 2})

    assert outcome.success
    assert outcome.status_code == 200
    assert outcome.to_payload() == {'success': True, 'imported': {'vehicles': 2}}


@pytest.mark.parametrize('error', [BackupFormatError('bad zip'), BackupContentError('nothing here')])
def test_run_guarded_reports_user_errors_as_400(error):
    def body():
        raise error

    outcome = run_guarded('test', body)

    assert outcome.status_code == 400
    assert outcome.to_payload() == {'error': str(error)}


def test_run_guarded_hides_unexpected_errors(caplog):
    def body():
        raise KeyError('internal detail')

    outcome = run_guarded('test', body)

    assert outcome == ImportOutcome(success=False, error='Import failed', status_code=500)
    assert 'internal detail' not in outcome.to_payload()['error']
    assert any('Import failed' in record.getMessage() for record in caplog.records)


def test_run_guarded_treats_timeout_as_server_error():
    def body():
        raise ImportTimeoutError('too slow')

    assert run_guarded('test', body).status_code == 500
