"""
Plant lot lifecycle: creation, growth and health history, photos, harvest,
and the derivations computed on read (age, harvest readiness).

A lot's current_height / diameter / health_status are a projection of the
newest entry in growth_history / health_records. They are only written by
the same atomic update that appends that entry, so concurrent writers race
on the projection (last write wins) while every appended entry survives.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from database import LotRepository, parse_object_id, to_str_id, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import (
    HEALTH_STATUSES,
    Actor,
    GrowthMeasurementIn,
    HarvestIn,
    HealthObservationIn,
    PhotoIn,
    PlantLot,
    PlantLotUpdate,
)
from species import SpeciesCatalog, expected_harvest_date

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)
SORTABLE_FIELDS = ("planted_date", "lot_id", "zone", "current_height", "health_status", "created_at")
MAX_PAGE_SIZE = 100


# ---------------- Derivations ----------------
def compute_age(lot: Dict[str, Any], now: Optional[datetime] = None) -> int:
    """Whole days elapsed since planting."""
    now = now or utcnow()
    return (now - lot["planted_date"]) // ONE_DAY


def _require_species(lot: Dict[str, Any], species: Optional[Dict[str, Any]]):
    if species is None:
        raise NotFoundError(f"Species data for lot {lot.get('lot_id')} is not available")
    if lot.get("species_id") is not None and species.get("_id") is not None \
            and lot["species_id"] != species["_id"]:
        raise ValidationError(f"Species {species.get('code')} does not belong to lot {lot.get('lot_id')}")


def compute_harvest_readiness(lot: Dict[str, Any], species: Optional[Dict[str, Any]],
                              now: Optional[datetime] = None) -> bool:
    _require_species(lot, species)
    return (compute_age(lot, now) >= species["harvest_days"]
            and lot["current_height"] >= species["min_height"])


def days_until_harvest(lot, species, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    remaining = expected_harvest_date(species, lot["planted_date"]) - now
    return math.ceil(remaining / ONE_DAY)


def growth_percentage(lot, species) -> Optional[float]:
    if not species.get("min_height"):
        return None
    return min(100.0, lot["current_height"] / species["min_height"] * 100)


def is_harvested(lot) -> bool:
    return bool((lot.get("harvest") or {}).get("is_harvested"))


def harvest_status(lot, species, now: Optional[datetime] = None) -> str:
    if is_harvested(lot):
        return "harvested"
    if compute_harvest_readiness(lot, species, now):
        return "ready"
    return "growing"


def lot_view(lot: Dict[str, Any], species: Optional[Dict[str, Any]],
             now: Optional[datetime] = None) -> Dict[str, Any]:
    """Stored lot plus the fields derived from its species and the clock."""
    now = now or utcnow()
    view = to_str_id(lot)
    view["age_in_days"] = compute_age(lot, now)
    view["full_location"] = f"{lot['zone']} - {lot['location_id']}"
    if species is None:
        view["species"] = None
        return view
    view["species"] = {
        "id": str(species["_id"]),
        "name": species["name"],
        "code": species["code"],
        "category": species.get("category"),
        "min_height": species["min_height"],
        "harvest_days": species["harvest_days"],
    }
    view["expected_harvest_date"] = expected_harvest_date(species, lot["planted_date"])
    view["days_until_harvest"] = days_until_harvest(lot, species, now)
    view["is_ready_for_harvest"] = compute_harvest_readiness(lot, species, now)
    view["harvest_status"] = harvest_status(lot, species, now)
    view["growth_percentage"] = growth_percentage(lot, species)
    return view


# ---------------- Tracker ----------------
class LotTracker:
    def __init__(self, repo: LotRepository, catalog: SpeciesCatalog):
        self.repo = repo
        self.catalog = catalog

    # -- reads --
    def get(self, lot_id) -> Dict[str, Any]:
        oid = parse_object_id(lot_id, "Plant lot")
        lot = self.repo.get_by_id(oid)
        if lot is None:
            raise NotFoundError("Plant lot not found")
        return lot

    def get_by_code(self, code: str) -> Dict[str, Any]:
        lot = self.repo.get_document({"lot_id": (code or "").strip().upper()})
        if lot is None:
            raise NotFoundError("Plant lot not found")
        return lot

    def species_for(self, lot) -> Dict[str, Any]:
        return self.catalog.get(lot["species_id"])

    def view(self, lot, now: Optional[datetime] = None) -> Dict[str, Any]:
        return lot_view(lot, self.species_for(lot), now)

    def views(self, lots: List[Dict[str, Any]], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        species = self.catalog.get_many(lot["species_id"] for lot in lots)
        return [lot_view(lot, species.get(lot["species_id"]), now) for lot in lots]

    def list_lots(self, zone: Optional[str] = None, health_status: Optional[str] = None,
                  species_id: Optional[str] = None, include_inactive: bool = False,
                  page: int = 1, limit: int = 10, sort_by: str = "planted_date",
                  sort_order: str = "desc"):
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort by '{sort_by}'. Use one of: {', '.join(SORTABLE_FIELDS)}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("Sort order must be 'asc' or 'desc'")

        filt: Dict[str, Any] = {}
        if zone:
            filt["zone"] = zone
        if health_status:
            filt["health_status"] = health_status
        if species_id:
            filt["species_id"] = parse_object_id(species_id, "Plant species")
        if not include_inactive:
            filt["is_active"] = True

        total = self.repo.count_documents(filt)
        lots = self.repo.get_documents(
            filt,
            sort=[(sort_by, -1 if sort_order == "desc" else 1), ("_id", 1)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        pagination = {"page": page, "limit": limit, "total": total,
                      "pages": math.ceil(total / limit)}
        return lots, pagination

    def find_by_zone(self, zone: str) -> List[Dict[str, Any]]:
        return self.repo.get_documents({"zone": zone, "is_active": True})

    def find_by_health_status(self, status: str) -> List[Dict[str, Any]]:
        if status not in HEALTH_STATUSES:
            raise ValidationError(f"Health status must be one of: {', '.join(HEALTH_STATUSES)}")
        return self.repo.get_documents({"health_status": status, "is_active": True})

    def find_by_assigned_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.repo.get_documents({"assigned_to": user_id, "is_active": True})

    def find_unharvested(self) -> List[Dict[str, Any]]:
        return self.repo.get_documents({"harvest.is_harvested": {"$ne": True}, "is_active": True},
                                       sort=[("planted_date", 1)])

    def find_ready_for_harvest(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        # Readiness is not stored, so every unharvested lot is evaluated
        now = now or utcnow()
        candidates = self.find_unharvested()
        species = self.catalog.get_many(lot["species_id"] for lot in candidates)
        ready = []
        for lot in candidates:
            sp = species.get(lot["species_id"])
            if sp is None:
                logger.warning("Lot %s references missing species %s", lot["lot_id"], lot["species_id"])
                continue
            if compute_harvest_readiness(lot, sp, now):
                ready.append(lot)
        return ready

    def stats(self) -> Dict[str, Any]:
        lots = self.repo.get_documents()
        heights = [l["current_height"] for l in lots if l.get("current_height") is not None]
        diameters = [l["diameter"] for l in lots if l.get("diameter") is not None]

        by_status = {s: 0 for s in HEALTH_STATUSES}
        zones: Dict[str, List[float]] = {}
        for l in lots:
            by_status[l["health_status"]] = by_status.get(l["health_status"], 0) + 1
            zones.setdefault(l["zone"], []).append(l.get("current_height") or 0)

        return {
            "total_lots": len(lots),
            "active_lots": sum(1 for l in lots if l.get("is_active")),
            "harvested_lots": sum(1 for l in lots if is_harvested(l)),
            "health_status_counts": by_status,
            "avg_height": sum(heights) / len(heights) if heights else 0,
            "avg_diameter": sum(diameters) / len(diameters) if diameters else 0,
            "zone_stats": [
                {"zone": zone, "count": len(hs), "avg_height": sum(hs) / len(hs)}
                for zone, hs in sorted(zones.items())
            ],
        }

    # -- writes --
    def create_lot(self, fields: PlantLot, actor: Actor) -> Dict[str, Any]:
        species = self.catalog.get(fields.species_id)
        if not species.get("is_active", True):
            raise ValidationError(f"Plant species {species['code']} is inactive")
        if self.repo.get_document({"lot_id": fields.lot_id}):
            raise ConflictError("Lot ID already exists")

        now = utcnow()
        doc = fields.model_dump(exclude={"photos"})
        doc["species_id"] = species["_id"]
        doc["growth_history"] = [{
            "height": fields.current_height,
            "diameter": fields.diameter,
            "recorded_at": now,
            "recorded_by": actor.id,
            "notes": "Initial measurement",
        }]
        doc["health_records"] = [{
            "status": fields.health_status,
            "symptoms": [],
            "treatment": None,
            "recorded_at": now,
            "recorded_by": actor.id,
            "notes": "Initial status",
        }]
        doc["photos"] = [self._photo_entry(p, actor, now) for p in fields.photos]
        doc["harvest"] = {"is_harvested": False}
        doc["is_active"] = True
        doc["created_by"] = actor.id
        doc["updated_by"] = None

        lot = self.repo.create_document(doc)
        logger.info("Created lot %s (species %s) by %s", lot["lot_id"], species["code"], actor.id)
        return lot

    def _append(self, lot_id, push: Dict[str, Any], set_fields: Dict[str, Any], actor: Actor):
        oid = parse_object_id(lot_id, "Plant lot")
        updated = self.repo.update_document(
            {"_id": oid},
            {"$push": push, "$set": {**set_fields, "updated_by": actor.id}},
        )
        if updated is None:
            raise NotFoundError("Plant lot not found")
        return updated

    def record_growth_measurement(self, lot_id, measurement: GrowthMeasurementIn, actor: Actor):
        entry = {
            "height": measurement.height,
            "diameter": measurement.diameter,
            "recorded_at": utcnow(),
            "recorded_by": actor.id,
            "notes": measurement.notes,
        }
        current = {"current_height": measurement.height}
        if measurement.diameter is not None:
            current["diameter"] = measurement.diameter
        return self._append(lot_id, {"growth_history": entry}, current, actor)

    def _record_diameter(self, lot_id, diameter: float, actor: Actor, attempts: int = 5):
        """Measurement that only changes the diameter and keeps the stored height.

        The update is conditional on the height read, so a measurement landing in
        between is never overwritten with a stale value.
        """
        for _ in range(attempts):
            lot = self.get(lot_id)
            entry = {
                "height": lot["current_height"],
                "diameter": diameter,
                "recorded_at": utcnow(),
                "recorded_by": actor.id,
                "notes": None,
            }
            updated = self.repo.update_document(
                {"_id": lot["_id"], "current_height": lot["current_height"]},
                {"$push": {"growth_history": entry}, "$set": {"diameter": diameter, "updated_by": actor.id}},
            )
            if updated is not None:
                return updated
        raise ConflictError(f"Plant lot {lot['lot_id']} changed while updating, try again")

    def record_health_observation(self, lot_id, observation: HealthObservationIn, actor: Actor):
        entry = {
            "status": observation.status,
            "symptoms": observation.symptoms,
            "treatment": observation.treatment,
            "recorded_at": utcnow(),
            "recorded_by": actor.id,
            "notes": observation.notes,
        }
        return self._append(lot_id, {"health_records": entry},
                            {"health_status": observation.status}, actor)

    @staticmethod
    def _photo_entry(photo: PhotoIn, actor: Actor, now: datetime):
        return {"url": photo.url, "caption": photo.caption, "taken_date": now, "taken_by": actor.id}

    def attach_photo(self, lot_id, photo: PhotoIn, actor: Actor):
        return self._append(lot_id, {"photos": self._photo_entry(photo, actor, utcnow())}, {}, actor)

    def harvest(self, lot_id, harvest: HarvestIn, actor: Actor):
        lot = self.get(lot_id)
        if is_harvested(lot):
            raise ConflictError(f"Plant lot {lot['lot_id']} is already harvested")
        now = utcnow()
        if now < lot["planted_date"]:
            raise ValidationError("Harvest date cannot be earlier than the planted date")

        record = {
            "is_harvested": True,
            "harvested_date": now,
            "quantity": harvest.quantity,
            "unit": harvest.unit,
            "quality": harvest.quality,
            "harvested_by": actor.id,
        }
        # The filter makes a concurrent second harvest a no-op
        updated = self.repo.update_document(
            {"_id": lot["_id"], "harvest.is_harvested": {"$ne": True}},
            {"$set": {"harvest": record, "updated_by": actor.id}},
        )
        if updated is None:
            raise ConflictError(f"Plant lot {lot['lot_id']} is already harvested")
        logger.info("Harvested lot %s: %s %s grade %s by %s", lot["lot_id"],
                    harvest.quantity, harvest.unit, harvest.quality, actor.id)
        return updated

    def update_lot(self, lot_id, changes: PlantLotUpdate, actor: Actor):
        lot = self.get(lot_id)
        fields = changes.model_dump(exclude_unset=True)

        if fields.get("current_height") is not None:
            self.record_growth_measurement(lot["_id"], GrowthMeasurementIn(
                height=fields["current_height"], diameter=fields.get("diameter")), actor)
        elif fields.get("diameter") is not None:
            self._record_diameter(lot["_id"], fields["diameter"], actor)
        if fields.get("health_status"):
            self.record_health_observation(lot["_id"], HealthObservationIn(
                status=fields["health_status"], notes=fields.get("notes")), actor)
        for photo in changes.photos or []:
            self.attach_photo(lot["_id"], photo, actor)

        direct = {k: fields[k] for k in ("notes", "zone", "location_id", "assigned_to",
                                         "soil_condition", "last_watered", "last_fertilized",
                                         "last_pruned") if k in fields}
        direct["updated_by"] = actor.id
        updated = self.repo.update_document({"_id": lot["_id"]}, {"$set": direct})
        logger.info("Updated lot %s by %s", lot["lot_id"], actor.id)
        return updated

    def deactivate_lot(self, lot_id, actor: Actor):
        lot = self.get(lot_id)
        updated = self.repo.update_document(
            {"_id": lot["_id"]}, {"$set": {"is_active": False, "updated_by": actor.id}})
        logger.info("Deactivated lot %s by %s", lot["lot_id"], actor.id)
        return updated

    def delete_lot(self, lot_id, actor: Actor):
        lot = self.get(lot_id)
        if actor.role != "manager":
            raise AuthorizationError("Access denied. Only managers can delete plant lots")
        self.repo.delete_document(lot["_id"])
        logger.info("Deleted lot %s by %s", lot["lot_id"], actor.id)
