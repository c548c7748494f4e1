from __future__ import annotations

import logging
import os
import uuid
from typing import Dict, List, Optional

from cdss import config
from cdss.auth.credentials import hash_password
from cdss.store.schemas import DiagnosticModule, PatientProfile, User
from cdss.store.sqlite_store import SQLiteStore
from cdss.tools import region_rules
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)

DEMO_ACCOUNTS: List[Dict[str, str]] = [
    {"email": "admin@cdss.local", "first_name": "Ada", "last_name": "Admin", "role": "ADMIN"},
    {
        "email": "clinician@cdss.local",
        "first_name": "Chris",
        "last_name": "Okafor",
        "role": "CLINICIAN",
        "specialization": "Musculoskeletal Physiotherapy",
        "license_number": "PT-100245",
    },
    {"email": "patient@cdss.local", "first_name": "Pat", "last_name": "Mensah", "role": "PATIENT"},
]


def seed_accounts(store: SQLiteStore, password: Optional[str] = None) -> Dict[str, User]:
    password = password or config.DEMO_DEFAULT_PASSWORD
    seeded: Dict[str, User] = {}
    for acc in DEMO_ACCOUNTS:
        user = store.get_user_by_email(acc["email"])
        if user is None:
            user = User(
                id=uuid.uuid4().hex,
                email=acc["email"],
                password_hash=hash_password(password),
                first_name=acc["first_name"],
                last_name=acc["last_name"],
                role=acc["role"],
                is_verified=True,
                specialization=acc.get("specialization"),
                license_number=acc.get("license_number"),
                created_at=now_iso(),
            )
            store.create_user(user)
            logger.info("seeded account %s (%s)", user.email, user.role)
        seeded[acc["role"]] = user

    patient = seeded["PATIENT"]
    if store.get_patient_profile(patient.id) is None:
        store.upsert_patient_profile(
            PatientProfile(user_id=patient.id, assigned_clinician_id=seeded["CLINICIAN"].id, updated_at=now_iso())
        )
    return seeded


def seed_default_modules(store: SQLiteStore, admin_id: Optional[str] = None) -> List[DiagnosticModule]:
    created: List[DiagnosticModule] = []
    existing = {m.region.lower() for m in store.list_modules() if m.is_default}
    for region in region_rules.BODY_REGIONS:
        if region["id"] in existing:
            continue
        rules = region_rules.load_region_rules(region["id"])
        if not rules:
            continue
        module = DiagnosticModule(
            id=uuid.uuid4().hex,
            title=rules.get("title") or region_rules.region_title(region["id"]),
            region=region["id"].capitalize(),
            description=f"Default {region['name']} questionnaire",
            status="Active",
            questions=region_rules.rules_to_module_questions(rules),
            created_by=admin_id,
            updated_by=admin_id,
            is_default=True,
            created_at=now_iso(),
        )
        store.save_module(module)
        created.append(module)
    return created


def seed(store: SQLiteStore) -> Dict[str, User]:
    store.init_db()
    accounts = seed_accounts(store)
    seed_default_modules(store, admin_id=accounts["ADMIN"].id)
    return accounts


def main() -> None:
    config.setup_logging()
    os.makedirs(os.path.dirname(config.DB_PATH), exist_ok=True)
    store = SQLiteStore(config.DB_PATH)
    accounts = seed(store)

    print("Seeded accounts (password: %s):" % config.DEMO_DEFAULT_PASSWORD)
    for role, user in accounts.items():
        print(" -", user.email, "role:", role)
    print("\nDiagnostic modules:")
    for m in store.list_modules():
        print(" -", m.title, "region:", m.region, "status:", m.status)


if __name__ == "__main__":
    main()
