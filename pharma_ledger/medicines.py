import logging
from typing import Optional

from .errors import DuplicateKeyError, NotFoundError
from .models import FastMovingMedicine, Medicine, MedicineCreate, MedicineUpdate
from .service import LedgerService, new_id
from .storage import MEDICINES, ORDERS, to_document

logger = logging.getLogger(__name__)

FAST_MOVING_LIMIT = 12


class MedicineService:
    """Admin-managed medicine catalog. Orders snapshot name and price from it at checkout."""

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def list_medicines(self, company: Optional[str] = None) -> list[Medicine]:
        filters = {"company": company} if company else {}
        medicines = [Medicine(**d) for d in self.storage.find(MEDICINES, **filters)]
        medicines.sort(key=lambda m: m.name.lower())
        return medicines

    def get_medicine(self, medicine_id: str) -> Medicine:
        doc = self.storage.get(MEDICINES, medicine_id)
        if not doc:
            raise NotFoundError("Medicine not found")
        return Medicine(**doc)

    def create_medicine(self, request: MedicineCreate) -> Medicine:
        self._ensure_name_free(request.name)
        now = self.ledger.clock()
        medicine = Medicine(
            id=new_id(),
            name=request.name.strip(),
            description=request.description.strip(),
            company=request.company.strip(),
            mrp=request.mrp,
            cost=request.cost,
            price=request.cost,
            category=request.category,
            type=request.type.strip(),
            packing=request.packing.strip(),
            image_url=request.image_url,
            quantity=request.quantity,
            expiry_date=request.expiry_date,
            created_at=now,
        )
        self.storage.insert(MEDICINES, to_document(medicine))
        logger.info("Medicine %s (%s) added to catalog", medicine.id, medicine.name)
        return medicine

    def update_medicine(self, medicine_id: str, request: MedicineUpdate) -> Medicine:
        medicine = self.get_medicine(medicine_id)
        changes = request.model_dump(exclude_none=True)
        if "name" in changes and changes["name"].lower() != medicine.name.lower():
            self._ensure_name_free(changes["name"], exclude_id=medicine.id)
        if "cost" in changes:
            changes["price"] = changes["cost"]

        updated = medicine.model_copy(update={**changes, "updated_at": self.ledger.clock()})
        self.storage.replace(MEDICINES, to_document(updated))
        logger.info("Medicine %s updated: %s", medicine.id, ", ".join(sorted(changes)))
        return updated

    def delete_medicine(self, medicine_id: str) -> None:
        if not self.storage.delete(MEDICINES, medicine_id):
            raise NotFoundError("Medicine not found")
        logger.info("Medicine %s removed from catalog", medicine_id)

    def fast_moving(self) -> list[FastMovingMedicine]:
        """Medicines bought by the most distinct customers, balanced across categories and companies.

        The top few per category and the top few per company are merged so a
        single popular brand cannot fill the whole list. Groups are smaller
        when the catalog spans many companies and categories.
        """
        catalog = {m.id: m for m in self.list_medicines()}
        buyers: dict[str, set[str]] = {}
        for doc in self.storage.find(ORDERS):
            for item in doc["items"]:
                buyers.setdefault(item["medicine_id"], set()).add(doc["customer_id"])

        ranked = [
            FastMovingMedicine(**catalog[mid].model_dump(), unique_customers=len(customers))
            for mid, customers in buyers.items()
            if mid in catalog
        ]
        ranked.sort(key=lambda m: (-m.unique_customers, m.name))

        companies = {m.company for m in catalog.values()}
        categories = {m.category for m in catalog.values()}
        per_group = 3 if len(companies) <= 4 or len(categories) <= 4 else 2

        picked: dict[str, FastMovingMedicine] = {}
        for key in (lambda m: m.category, lambda m: m.company):
            taken: dict[object, int] = {}
            for medicine in ranked:
                group = key(medicine)
                if taken.get(group, 0) < per_group:
                    taken[group] = taken.get(group, 0) + 1
                    picked[medicine.id] = medicine

        result = sorted(picked.values(), key=lambda m: (-m.unique_customers, m.name))
        return result[:FAST_MOVING_LIMIT]

    def _ensure_name_free(self, name: str, exclude_id: Optional[str] = None) -> None:
        wanted = name.strip().lower()
        for doc in self.storage.find(MEDICINES):
            if doc["id"] != exclude_id and doc["name"].lower() == wanted:
                raise DuplicateKeyError("name", "Medicine with this name already exists")
