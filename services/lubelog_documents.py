"""Typed views over the untyped documents recovered from a LubeLog database.

The LiteDB file carries no collection tags we can rely on once documents are
scanned out of it, so each document is decoded against the known record
shapes in a fixed order (vehicle, service record, note) and the first shape
that fits wins.  Documents that fit none are dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ClassifiedDocuments",
    "LubeLogFile",
    "LubeLogNote",
    "LubeLogServiceRecord",
    "LubeLogVehicle",
    "classify_document",
    "classify_documents",
]


@dataclass(frozen=True)
class LubeLogFile:
    name: str
    location: str


def _decode_files(value: Any) -> List[LubeLogFile]:
    files: List[LubeLogFile] = []
    if not isinstance(value, list):
        return files
    for entry in value:
        if not isinstance(entry, Mapping):
            continue
        location = entry.get("Location")
        if not location:
            continue
        name = entry.get("Name") or str(location).rsplit("/", 1)[-1]
        files.append(LubeLogFile(name=str(name), location=str(location)))
    return files


@dataclass
class LubeLogVehicle:
    id: Any
    year: Any
    make: str
    model: str
    license_plate: Optional[str] = None
    image_location: Optional[str] = None
    is_electric: bool = False
    is_diesel: bool = False
    purchase_price: Any = None
    sold_price: Any = None

    @classmethod
    def decode(cls, doc: Mapping[str, Any]) -> Optional["LubeLogVehicle"]:
        if not (doc.get("Make") and doc.get("Model") and doc.get("Year")):
            return None
        return cls(
            id=doc.get("_id"),
            year=doc["Year"],
            make=str(doc["Make"]),
            model=str(doc["Model"]),
            license_plate=doc.get("LicensePlate") or None,
            image_location=doc.get("ImageLocation") or None,
            is_electric=bool(doc.get("IsElectric")),
            is_diesel=bool(doc.get("IsDiesel")),
            purchase_price=doc.get("PurchasePrice"),
            sold_price=doc.get("SoldPrice"),
        )


@dataclass
class LubeLogServiceRecord:
    id: Any
    vehicle_id: Any
    date: Any
    description: str
    cost: Any
    mileage: Any = None
    notes: Optional[str] = None
    files: List[LubeLogFile] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @classmethod
    def decode(cls, doc: Mapping[str, Any]) -> Optional["LubeLogServiceRecord"]:
        if "NoteText" in doc:
            return None
        if doc.get("VehicleId") is None or "Cost" not in doc:
            return None
        if not (doc.get("Date") and doc.get("Description")):
            return None
        tags = doc.get("Tags")
        return cls(
            id=doc.get("_id"),
            vehicle_id=doc["VehicleId"],
            date=doc["Date"],
            description=str(doc["Description"]),
            cost=doc.get("Cost"),
            mileage=doc.get("Mileage"),
            notes=doc.get("Notes") or None,
            files=_decode_files(doc.get("Files")),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        )


@dataclass
class LubeLogNote:
    id: Any
    vehicle_id: Any
    title: Optional[str]
    body: str
    pinned: bool = False
    files: List[LubeLogFile] = field(default_factory=list)

    @classmethod
    def decode(cls, doc: Mapping[str, Any]) -> Optional["LubeLogNote"]:
        if "NoteText" not in doc or doc.get("VehicleId") is None:
            return None
        return cls(
            id=doc.get("_id"),
            vehicle_id=doc["VehicleId"],
            title=doc.get("Description"),
            body=str(doc.get("NoteText") or ""),
            pinned=bool(doc.get("Pinned")),
            files=_decode_files(doc.get("Files")),
        )


ClassifiedDocument = Union[LubeLogVehicle, LubeLogServiceRecord, LubeLogNote]

# Order matters: a document that fits more than one shape belongs to the first.
_SHAPES = (LubeLogVehicle, LubeLogServiceRecord, LubeLogNote)


def classify_document(doc: Mapping[str, Any]) -> Optional[ClassifiedDocument]:
    for shape in _SHAPES:
        decoded = shape.decode(doc)
        if decoded is not None:
            return decoded
    return None


@dataclass
class ClassifiedDocuments:
    vehicles: List[LubeLogVehicle] = field(default_factory=list)
    service_records: List[LubeLogServiceRecord] = field(default_factory=list)
    notes: List[LubeLogNote] = field(default_factory=list)
    unclassified: int = 0

    def summary(self) -> Dict[str, int]:
        return {
            "vehicles": len(self.vehicles),
            "serviceRecords": len(self.service_records),
            "notes": len(self.notes),
            "unclassified": self.unclassified,
        }


def classify_documents(docs: Iterable[Mapping[str, Any]]) -> ClassifiedDocuments:
    result = ClassifiedDocuments()
    for doc in docs:
        classified = classify_document(doc)
        if isinstance(classified, LubeLogVehicle):
            result.vehicles.append(classified)
        elif isinstance(classified, LubeLogServiceRecord):
            result.service_records.append(classified)
        elif isinstance(classified, LubeLogNote):
            result.notes.append(classified)
        else:
            result.unclassified += 1
    LOGGER.info("Classified LubeLog documents: %s", result.summary())
    return result
