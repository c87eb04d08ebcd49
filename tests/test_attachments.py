import pytest

from services.attachments import AttachmentMigrator, attachment_category, mime_type, safe_filename


@pytest.mark.parametrize(
    'name, expected',
    [
        ('photo.JPG', 'image/jpeg'),
        ('scan.pdf', 'application/pdf'),
        ('report.docx', 'application/vnd.openxmlformats-officedocument.wordprocessingml.document'),
        ('log.csv', 'text/csv'),
        ('archive.tar.gz', 'application/octet-stream'),
        ('README', 'application/octet-stream'),
    ],
)
def test_mime_type_by_extension(name, expected):
    assert mime_type(name) == expected


def test_attachment_category_splits_images_from_diagnostics():
    assert attachment_category('front.webp') == 'image'
    assert attachment_category('obd-readout.txt') == 'diagnostic'


def test_safe_filename_replaces_unsafe_characters():
    assert safe_filename('my receipt (1).pdf') == 'my_receipt__1_.pdf'
    assert safe_filename('../../etc/passwd') == '.._.._etc_passwd'


def test_copy_writes_into_tenant_upload_tree(data_dir, tmp_path):
    source = tmp_path / 'backup'
    (source / 'documents').mkdir(parents=True)
    (source / 'documents' / 'receipt.pdf').write_bytes(b'%PDF-1.4 receipt')
    migrator = AttachmentMigrator(source, 'org-1')

    stored = migrator.copy('/documents/receipt.pdf', 'services', 'lubelog-7-receipt.pdf')

    assert stored is not None
    assert stored.file_url == '/api/files/org-1/services/lubelog-7-receipt.pdf'
    assert stored.file_size == len(b'%PDF-1.4 receipt')
    assert stored.path == data_dir / 'uploads' / 'org-1' / 'services' / 'lubelog-7-receipt.pdf'
    assert stored.path.read_bytes() == b'%PDF-1.4 receipt'
    assert migrator.written == [stored.path]


def test_copy_skips_missing_and_escaping_sources(data_dir, tmp_path):
    source = tmp_path / 'backup'
    source.mkdir()
    (tmp_path / 'secret.txt').write_text('outside')
    migrator = AttachmentMigrator(source, 'org-1')

    assert migrator.copy('/documents/absent.pdf', 'services', 'absent.pdf') is None
    assert migrator.copy('../secret.txt', 'services', 'secret.txt') is None
    assert migrator.written == []
