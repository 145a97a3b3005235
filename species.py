"""
Species catalog: registration, lookup and soft deactivation of crop types.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import SpeciesRepository, parse_object_id, to_str_id, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Actor, PlantSpecies, PlantSpeciesUpdate

logger = logging.getLogger(__name__)


def expected_harvest_date(species: Dict[str, Any], planted_date: datetime) -> datetime:
    return planted_date + timedelta(days=species["harvest_days"])


def species_view(species: Dict[str, Any]) -> Dict[str, Any]:
    view = to_str_id(species)
    view["full_identifier"] = f"{species['name']} ({species['code']})"
    return view


class SpeciesCatalog:
    def __init__(self, repo: SpeciesRepository):
        self.repo = repo

    def register(self, species: PlantSpecies, actor: Actor) -> Dict[str, Any]:
        if self.repo.get_document({"name": species.name}):
            raise ConflictError(f"Plant species named '{species.name}' already exists")
        if self.repo.get_document({"code": species.code}):
            raise ConflictError(f"Plant species code '{species.code}' already exists")

        doc = species.model_dump()
        doc["is_active"] = True
        doc["created_by"] = actor.id
        created = self.repo.create_document(doc)
        logger.info("Registered species %s by %s", species.code, actor.id)
        return created

    def get(self, species_id) -> Dict[str, Any]:
        oid = parse_object_id(species_id, "Plant species")
        doc = self.repo.get_by_id(oid)
        if doc is None:
            raise NotFoundError("Plant species not found")
        return doc

    def get_by_code(self, code: str) -> Dict[str, Any]:
        doc = self.repo.get_document({"code": (code or "").strip().upper()})
        if doc is None:
            raise NotFoundError("Plant species not found")
        return doc

    def lookup(self, key: str) -> Dict[str, Any]:
        """Resolve a species by document id or by code."""
        # Codes are at most 10 characters, so a valid ObjectId is never a code
        if ObjectId.is_valid(key):
            return self.get(key)
        return self.get_by_code(key)

    def get_many(self, ids) -> Dict[ObjectId, Dict[str, Any]]:
        ids = list({i for i in ids if i is not None})
        if not ids:
            return {}
        return {d["_id"]: d for d in self.repo.get_documents({"_id": {"$in": ids}})}

    def list(self, category: Optional[str] = None, include_inactive: bool = False) -> List[Dict[str, Any]]:
        filt: Dict[str, Any] = {}
        if category:
            filt["category"] = category
        if not include_inactive:
            filt["is_active"] = True
        return self.repo.get_documents(filt, sort=[("name", 1)])

    def update(self, species_id, changes: PlantSpeciesUpdate, actor: Actor) -> Dict[str, Any]:
        current = self.get(species_id)
        fields = changes.model_dump(exclude_unset=True)
        max_height = fields.get("max_height")
        if max_height is not None and max_height < current["min_height"]:
            raise ValidationError("Maximum height must be greater than or equal to minimum height")
        fields["updated_by"] = actor.id
        return self.repo.update_document({"_id": current["_id"]}, {"$set": fields})

    def deactivate(self, species_id, actor: Actor) -> Dict[str, Any]:
        current = self.get(species_id)
        updated = self.repo.update_document(
            {"_id": current["_id"]},
            {"$set": {"is_active": False, "updated_by": actor.id, "deactivated_at": utcnow()}},
        )
        logger.info("Deactivated species %s by %s", current["code"], actor.id)
        return updated
