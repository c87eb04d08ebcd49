from services.lubelog_documents import (
    LubeLogNote,
    LubeLogServiceRecord,
    LubeLogVehicle,
    classify_document,
    classify_documents,
)


def test_vehicle_shape_wins_over_other_shapes():
    document = {
        '_id': 1,
        'Make': 'Ford',
        'Model': 'Transit',
        'Year': 2019,
        'VehicleId': 4,
        'Date': '2020-01-01',
        'Description': 'Looks like a service too',
        'Cost': 10,
        'NoteText': 'and a note',
    }

    classified = classify_document(document)

    assert isinstance(classified, LubeLogVehicle)
    assert classified.make == 'Ford'


def test_service_record_requires_all_fields_and_no_note_body():
    base = {'_id': 3, 'VehicleId': 0, 'Date': '2021-06-01', 'Description': 'Tyres', 'Cost': 0}

    record = classify_document(base)
    assert isinstance(record, LubeLogServiceRecord)
    assert record.vehicle_id == 0

    assert classify_document({**base, 'Description': ''}) is None
    missing_cost = dict(base)
    del missing_cost['Cost']
    assert classify_document(missing_cost) is None

    with_note = classify_document({**base, 'NoteText': 'Body'})
    assert isinstance(with_note, LubeLogNote)


def test_note_needs_vehicle_reference():
    note = classify_document({'_id': 5, 'VehicleId': 2, 'Description': 'Winter', 'NoteText': 'Swap wheels', 'Pinned': True})

    assert isinstance(note, LubeLogNote)
    assert note.title == 'Winter'
    assert note.body == 'Swap wheels'
    assert note.pinned is True
    assert classify_document({'_id': 6, 'NoteText': 'Orphan'}) is None


def test_service_record_files_keep_only_entries_with_locations():
    record = classify_document({
        '_id': 8,
        'VehicleId': 1,
        'Date': '2022-03-03',
        'Description': 'Brakes',
        'Cost': 99,
        'Files': [
            {'Name': 'receipt.pdf', 'Location': '/documents/receipt.pdf'},
            {'Name': 'pending.jpg', 'Location': ''},
            'not-a-file',
        ],
        'Tags': ['brakes', 'front'],
    })

    assert [f.name for f in record.files] == ['receipt.pdf']
    assert record.tags == ['brakes', 'front']


def test_classification_is_disjoint():
    documents = [
        {'_id': 1, 'Make': 'Ford', 'Model': 'Focus', 'Year': 2010},
        {'_id': 2, 'VehicleId': 1, 'Date': '2020-01-01', 'Description': 'Oil', 'Cost': 50},
        {'_id': 3, 'VehicleId': 1, 'Description': 'Note', 'NoteText': 'Body'},
        {'Name': 'receipt.pdf', 'Location': '/documents/receipt.pdf'},
        {'_id': 4, 'Make': 'Ford', 'Model': '', 'Year': 2010},
    ]

    result = classify_documents(documents)

    assert len(result.vehicles) == 1
    assert len(result.service_records) == 1
    assert len(result.notes) == 1
    assert result.unclassified == 2
    total = len(result.vehicles) + len(result.service_records) + len(result.notes) + result.unclassified
    assert total == len(documents)
