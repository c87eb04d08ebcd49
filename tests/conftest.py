import tempfile

import pytest

import data_paths
from database import get_db_connection, init_db
from services.import_common import ImportContext


@pytest.fixture()
def data_dir(tmp_path, monkeypatch):
    root = tmp_path / 'data'
    monkeypatch.setattr(data_paths, 'DATA_ROOT', root)
    init_db()
    return root


@pytest.fixture()
def db(data_dir):
    conn = get_db_connection()
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def scratch_root(tmp_path, monkeypatch):
    """Route scratch directories into a dedicated folder so cleanup can be asserted."""
    root = tmp_path / 'scratch'
    root.mkdir()
    monkeypatch.setattr(tempfile, 'tempdir', str(root))
    return root


@pytest.fixture()
def context():
    return ImportContext(organization_id='org-1', user_id='user-1')
