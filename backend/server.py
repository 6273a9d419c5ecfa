from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, Body
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, PyMongoError
import asyncio
import os
import logging
from pathlib import Path
from pydantic import BaseModel, ConfigDict
from typing import List, Optional, Any
import uuid
import html
import random
import re
import secrets
import string
from passlib.context import CryptContext

from analysis import ANALYSIS_WINDOW_MS, TextGenerator, build_text_generator, generate_analysis, now_ms

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PORT = int(os.environ.get("PORT", "3000"))
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", f"http://localhost:{PORT}").rstrip("/")
APP_ENV = os.environ.get("APP_ENV", "development")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-3.5-turbo")

SESSION_TTL_MS = 24 * 60 * 60 * 1000
SHARE_LINK_TTL_MS = 24 * 60 * 60 * 1000
SHARE_CODE_LENGTH = 6
MIN_PASSWORD_LENGTH = 6

ROLES = {"doctor", "caregiver"}
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Single round, unsalted: stored hashes are plain sha256 hex digests
pwd_context = CryptContext(schemes=["hex_sha256"])

# Resolved once; None means analysis always uses the basic fallback
text_generator = build_text_generator(os.environ.get("OPENAI_API_KEY"), OPENAI_MODEL)

# MongoDB connection
mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

# Create the main app without a prefix
app = FastAPI(title="CareCompass API")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# ==================== HELPERS ====================

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def generate_token() -> str:
    return secrets.token_hex(32)

def generate_share_code() -> str:
    # Not cryptographic; codes may collide across patients
    alphabet = string.ascii_uppercase + string.digits
    return "".join(random.choices(alphabet, k=SHARE_CODE_LENGTH))

def user_collection(role: str):
    return db.doctors if role == "doctor" else db.caregivers

def public_user(user_doc: dict) -> dict:
    return {
        "id": user_doc["id"],
        "name": user_doc["name"],
        "email": user_doc["email"],
        "role": user_doc["role"]
    }

def doctor_visibility_query(email: str) -> dict:
    """Patients assigned to the doctor, plus unassigned (legacy) patients."""
    return {
        "$or": [
            {"assignedDoctorIds": email},
            {"assignedDoctorIds": {"$size": 0}},
            {"assignedDoctorIds": None},
            {"assignedDoctorIds": {"$exists": False}}
        ]
    }

def server_error(message: str, exc: Exception) -> HTTPException:
    logger.error(f"{message}: {exc}")
    detail = {"error": message}
    if APP_ENV != "production":
        detail["message"] = str(exc)
    return HTTPException(status_code=500, detail=detail)

def extract_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):].strip()
        if token:
            return token
    return request.query_params.get("token")

# ==================== MODELS ====================

class SessionUser(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    email: str
    role: str

class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    confirmPassword: Optional[str] = None
    role: Optional[str] = None

class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None

class LogoutRequest(BaseModel):
    token: Optional[str] = None

class AssignRequest(BaseModel):
    doctorEmails: Optional[Any] = None

class NoteCreate(BaseModel):
    note: Optional[str] = None

# ==================== AUTHENTICATION ====================

async def get_current_user(request: Request) -> SessionUser:
    """Resolve the bearer token (header or ?token=) to the session's user snapshot."""
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        session = await db.sessions.find_one({"token": token}, {"_id": 0})
        if session and session.get("expiresAt", 0) <= now_ms():
            await db.sessions.delete_one({"token": token})
            session = None
    except PyMongoError as e:
        raise server_error("Server error", e)

    if not session:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    return SessionUser(**session["user"])

def get_text_generator() -> Optional[TextGenerator]:
    return text_generator

def require_caregiver(current_user: SessionUser, action: str):
    if current_user.role != "caregiver":
        raise HTTPException(status_code=403, detail=f"Only caregivers can {action}")

# ==================== AUTH ROUTES ====================

@api_router.get("/ping")
async def ping():
    return {"ok": True}

@api_router.post("/register", status_code=201)
async def register(user_data: RegisterRequest):
    """Register a doctor or caregiver"""
    name, email, password = user_data.name, user_data.email, user_data.password
    if not all([name, email, password, user_data.confirmPassword, user_data.role]):
        raise HTTPException(status_code=400, detail="All fields are required")
    if user_data.role not in ROLES:
        raise HTTPException(status_code=400, detail="Invalid role. Must be doctor or caregiver")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if password != user_data.confirmPassword:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    if not EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    users = user_collection(user_data.role)
    try:
        # Check-then-insert is racy; the unique index catches what slips through
        if await users.find_one({"email": email}):
            raise HTTPException(status_code=409, detail="Email already registered")

        new_user = {
            "id": f"user_{uuid.uuid4().hex[:12]}",
            "name": name,
            "email": email,
            "password": hash_password(password),
            "role": user_data.role,
            "createdAt": now_ms()
        }
        await users.insert_one(new_user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")
    except PyMongoError as e:
        raise server_error("Server error during registration", e)

    return {"message": "Account created successfully", "user": public_user(new_user)}

@api_router.post("/login")
async def login(form_data: LoginRequest):
    """Login and open a 24 hour session"""
    if not form_data.email or not form_data.password or not form_data.role:
        raise HTTPException(status_code=400, detail="Email, password, and role are required")
    if form_data.role not in ROLES:
        raise HTTPException(status_code=400, detail="Invalid role")

    try:
        user_doc = await user_collection(form_data.role).find_one({"email": form_data.email}, {"_id": 0})
        if not user_doc or not verify_password(form_data.password, user_doc["password"]):
            raise HTTPException(status_code=401, detail="Invalid credentials")

        user = public_user(user_doc)
        token = generate_token()
        created_at = now_ms()
        await db.sessions.insert_one({
            "token": token,
            "user": user,
            "createdAt": created_at,
            "expiresAt": created_at + SESSION_TTL_MS
        })
    except PyMongoError as e:
        raise server_error("Server error during login", e)

    return {"token": token, "user": user}

@api_router.post("/logout")
async def logout(request: Request, payload: Optional[LogoutRequest] = Body(default=None)):
    """Logout; succeeds whether or not the session exists"""
    auth_header = request.headers.get("Authorization") or ""
    token = auth_header.replace("Bearer ", "", 1).strip() or (payload.token if payload else None)
    try:
        if token:
            await db.sessions.delete_one({"token": token})
    except PyMongoError as e:
        raise server_error("Server error", e)
    return {"message": "Logged out successfully"}

@api_router.get("/me")
async def get_me(current_user: SessionUser = Depends(get_current_user)):
    """Get the session's user snapshot"""
    return {"user": current_user.model_dump()}

# ==================== PATIENTS ====================

@api_router.get("/patients", response_model=List[dict])
async def list_patients(current_user: SessionUser = Depends(get_current_user)):
    if current_user.role == "caregiver":
        query = {}
    elif current_user.role == "doctor":
        query = doctor_visibility_query(current_user.email)
    else:
        return []
    try:
        return await db.patients.find(query, {"_id": 0}).to_list(None)
    except PyMongoError as e:
        raise server_error("Server error", e)

@api_router.post("/patients", status_code=201, response_model=dict)
async def create_patient(
    payload: Optional[dict] = Body(default=None),
    current_user: SessionUser = Depends(get_current_user)
):
    """Create a patient; doctors are auto-assigned to what they create"""
    if not payload or not payload.get("id"):
        raise HTTPException(status_code=400, detail="id required")

    doc = {k: v for k, v in payload.items() if k != "_id"}
    doc.setdefault("assignedDoctorId", None)
    doc.setdefault("assignedDoctorIds", [])
    if current_user.role == "doctor":
        doc["assignedDoctorIds"] = [current_user.email]

    try:
        if await db.patients.find_one({"id": doc["id"]}):
            raise HTTPException(status_code=409, detail="patient exists")
        await db.patients.insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="patient exists")
    except PyMongoError as e:
        raise server_error("Server error", e)

    doc.pop("_id", None)
    return doc

@api_router.post("/patients/{patient_id}/assign", response_model=dict)
async def assign_patient(
    patient_id: str,
    payload: Optional[AssignRequest] = Body(default=None),
    current_user: SessionUser = Depends(get_current_user)
):
    """Replace the patient's assigned doctor list"""
    require_caregiver(current_user, "assign patients")
    doctor_emails = payload.doctorEmails if payload else None
    if not isinstance(doctor_emails, list) or not doctor_emails:
        raise HTTPException(status_code=400, detail="doctorEmails array required")

    try:
        result = await db.patients.update_one(
            {"id": patient_id},
            {"$set": {"assignedDoctorIds": doctor_emails}}
        )
        if result.matched_count == 0:
            raise HTTPException(status_code=404, detail="Patient not found")
        patient = await db.patients.find_one({"id": patient_id}, {"_id": 0})
    except PyMongoError as e:
        raise server_error("Server error", e)

    return {"ok": True, "patient": patient}

@api_router.get("/doctors", response_model=List[dict])
async def list_doctors(current_user: SessionUser = Depends(get_current_user)):
    """Doctors available for assignment"""
    require_caregiver(current_user, "list doctors")
    try:
        return await db.doctors.find({}, {"_id": 0, "email": 1, "name": 1}).to_list(None)
    except PyMongoError as e:
        raise server_error("Server error", e)

@api_router.delete("/patients/{patient_id}")
async def delete_patient(patient_id: str, current_user: SessionUser = Depends(get_current_user)):
    """Delete a patient and its logs, notes and share link.

    The deletes are independent; a failure part way leaves the rest behind.
    """
    try:
        await db.patients.delete_one({"id": patient_id})
        await db.logs.delete_many({"patientId": patient_id})
        await db.clinician_notes.delete_many({"patientId": patient_id})
        await db.share_links.delete_one({"patientId": patient_id})
    except PyMongoError as e:
        raise server_error("Server error", e)
    return {"ok": True}

# ==================== LOGS ====================

@api_router.get("/logs/{patient_id}", response_model=List[dict])
async def list_logs(patient_id: str, current_user: SessionUser = Depends(get_current_user)):
    try:
        return await db.logs.find({"patientId": patient_id}, {"_id": 0}).sort("createdAt", -1).to_list(None)
    except PyMongoError as e:
        raise server_error("Server error", e)

@api_router.post("/logs/{patient_id}", status_code=201, response_model=dict)
async def create_log(
    patient_id: str,
    payload: Optional[dict] = Body(default=None),
    current_user: SessionUser = Depends(get_current_user)
):
    """Store a daily observation; content is not validated"""
    doc = {k: v for k, v in (payload or {}).items() if k != "_id"}
    doc.update({
        "id": f"log_{uuid.uuid4().hex[:12]}",
        "patientId": patient_id,
        "createdAt": now_ms()
    })
    try:
        await db.logs.insert_one(doc)
    except PyMongoError as e:
        raise server_error("Server error", e)
    doc.pop("_id", None)
    return doc

# ==================== CLINICIAN NOTES ====================

@api_router.get("/notes/{patient_id}", response_model=List[dict])
async def list_notes(patient_id: str, current_user: SessionUser = Depends(get_current_user)):
    try:
        return await db.clinician_notes.find(
            {"patientId": patient_id},
            {"_id": 0}
        ).sort("createdAt", -1).to_list(None)
    except PyMongoError as e:
        raise server_error("Server error", e)

@api_router.post("/notes/{patient_id}", status_code=201, response_model=dict)
async def create_note(
    patient_id: str,
    payload: Optional[NoteCreate] = Body(default=None),
    current_user: SessionUser = Depends(get_current_user)
):
    doc = {
        "id": f"note_{uuid.uuid4().hex[:12]}",
        "patientId": patient_id,
        "note": (payload.note if payload else None) or "",
        "createdAt": now_ms()
    }
    try:
        await db.clinician_notes.insert_one(doc)
    except PyMongoError as e:
        raise server_error("Server error", e)
    doc.pop("_id", None)
    return doc

# ==================== SHARE LINKS ====================

@api_router.post("/share/{patient_id}", response_model=dict)
async def create_share_link(patient_id: str, current_user: SessionUser = Depends(get_current_user)):
    """Create a 24 hour share link, replacing any previous one"""
    code = generate_share_code()
    created_at = now_ms()
    share_doc = {
        "id": f"share_{uuid.uuid4().hex[:12]}",
        "patientId": patient_id,
        "code": code,
        "url": f"{PUBLIC_BASE_URL}/share/{code}",
        "createdAt": created_at,
        "expiresAt": created_at + SHARE_LINK_TTL_MS
    }
    try:
        await db.share_links.delete_many({"patientId": patient_id})
        await db.share_links.insert_one(share_doc)
    except PyMongoError as e:
        raise server_error("Server error", e)
    share_doc.pop("_id", None)
    return share_doc

@api_router.get("/share/{patient_id}", response_model=dict)
async def get_share_link(patient_id: str, current_user: SessionUser = Depends(get_current_user)):
    try:
        link = await db.share_links.find_one({"patientId": patient_id}, {"_id": 0})
        if link and link.get("expiresAt", 0) <= now_ms():
            await db.share_links.delete_one({"patientId": patient_id})
            link = None
    except PyMongoError as e:
        raise server_error("Server error", e)
    if not link:
        raise HTTPException(status_code=404, detail="Share link not found")
    return link

# ==================== ANALYSIS ====================

@api_router.get("/analysis/{patient_id}", response_model=dict)
async def get_analysis(
    patient_id: str,
    current_user: SessionUser = Depends(get_current_user),
    generator: Optional[TextGenerator] = Depends(get_text_generator)
):
    """7-day AI analysis, or the basic analysis when AI is unavailable"""
    logger.info(f"Analysis requested for patient {patient_id}")
    try:
        patient = await db.patients.find_one({"id": patient_id}, {"_id": 0})
        if not patient:
            raise HTTPException(status_code=404, detail=f'Patient with ID "{patient_id}" not found in database')

        logs = await db.logs.find(
            {"patientId": patient_id, "createdAt": {"$gte": now_ms() - ANALYSIS_WINDOW_MS}},
            {"_id": 0}
        ).sort("createdAt", 1).to_list(None)
    except PyMongoError as e:
        raise server_error("Server error generating analysis", e)

    return await generate_analysis(patient, logs, generator)

# ==================== SHARE PAGE ====================

@app.get("/share/{code}", response_class=HTMLResponse)
async def share_page(code: str):
    # Placeholder: the code is not resolved to patient data
    safe_code = html.escape(code)
    return (
        "<h2>Shared CareCompass Link</h2>"
        f"<p>Code: {safe_code}</p>"
        "<p>This demo link would show shared patient data.</p>"
    )

# ==================== ERRORS ====================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc!r}")
    content = {"error": "Server error"}
    if APP_ENV != "production":
        content["message"] = str(exc)
    return JSONResponse(status_code=500, content=content)

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

static_dir = os.environ.get("STATIC_DIR")
if static_dir and Path(static_dir).is_dir():
    app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")

async def ensure_indexes():
    try:
        await db.doctors.create_index("email", unique=True)
        await db.caregivers.create_index("email", unique=True)
        await db.sessions.create_index("token", unique=True)
        await db.patients.create_index("id", unique=True)
        await db.logs.create_index("patientId")
        await db.clinician_notes.create_index("patientId")
        await db.share_links.create_index("patientId")
    except PyMongoError as e:
        logger.warning(f"Index setup failed, continuing without indexes: {e}")

@app.on_event("startup")
async def schedule_index_setup():
    # Startup does not wait for the database to answer
    app.state.index_task = asyncio.create_task(ensure_indexes())

@app.on_event("shutdown")
async def shutdown_db_client():
    index_task = getattr(app.state, "index_task", None)
    if index_task is not None:
        if not index_task.done():
            index_task.cancel()
        try:
            await index_task
        except asyncio.CancelledError:
            logger.info("Index setup cancelled at shutdown")
        except Exception as e:
            logger.warning(f"Index setup failed: {e}")
    client.close()

def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)

if __name__ == "__main__":
    main()
