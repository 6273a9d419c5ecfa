"""
Assign every unassigned patient to all current doctors.

Patients created before doctor assignment existed have an empty, null or
missing ``assignedDoctorIds``. Re-running is a no-op once they are migrated.

Run with: python migrate_patient_assignments.py
"""
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

ROOT_DIR = Path(__file__).parent

logger = logging.getLogger(__name__)

UNASSIGNED_QUERY = {
    "$or": [
        {"assignedDoctorIds": {"$size": 0}},
        {"assignedDoctorIds": None},
        {"assignedDoctorIds": {"$exists": False}}
    ]
}


async def backfill_patient_assignments(db) -> dict:
    """Returns doctorCount plus the matched/modified counts of the update."""
    doctors = await db.doctors.find({}, {"_id": 0, "email": 1}).to_list(None)
    doctor_emails = [d["email"] for d in doctors if d.get("email")]
    logger.info(f"Found {len(doctor_emails)} doctor(s): {', '.join(doctor_emails)}")

    if not doctor_emails:
        logger.warning("No doctors found. Create doctors before migrating patients.")
        return {"doctorCount": 0, "matched": 0, "modified": 0}

    unassigned = await db.patients.find(UNASSIGNED_QUERY, {"_id": 0, "id": 1}).to_list(None)
    unassigned_ids = [p["id"] for p in unassigned]
    logger.info(f"Found {len(unassigned_ids)} unassigned patient(s)")

    if not unassigned_ids:
        return {"doctorCount": len(doctor_emails), "matched": 0, "modified": 0}

    result = await db.patients.update_many(
        UNASSIGNED_QUERY,
        {"$set": {"assignedDoctorIds": doctor_emails}}
    )
    logger.info(f"Updated {result.modified_count} patient(s), matched {result.matched_count}")

    updated = await db.patients.find({"id": {"$in": unassigned_ids}}, {"_id": 0}).to_list(None)
    for patient in updated:
        logger.info(
            f"  {patient['id']} ({patient.get('name') or 'N/A'}): "
            f"{', '.join(patient.get('assignedDoctorIds') or [])}"
        )

    return {
        "doctorCount": len(doctor_emails),
        "matched": result.matched_count,
        "modified": result.modified_count
    }


async def main() -> int:
    load_dotenv(ROOT_DIR / '.env')
    client = AsyncIOMotorClient(os.environ['MONGO_URL'])
    try:
        counts = await backfill_patient_assignments(client[os.environ['DB_NAME']])
    except PyMongoError as e:
        logger.error(f"Migration error: {e}")
        return 1
    finally:
        client.close()

    if counts["doctorCount"] == 0:
        return 1
    logger.info(f"Migration completed: matched {counts['matched']}, updated {counts['modified']}")
    return 0


def run():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
