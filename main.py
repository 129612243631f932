import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

import database
from aggregator import (
    RATING_ATTRIBUTES,
    attendance_percentage,
    calculate_average_performance,
    calculate_overall_rating,
    converted_totals,
    derive_session_status,
    financial_totals,
    present_inclusive_of_late,
    present_strict,
    summarize_user_attendance,
)
from auth import (
    CREATE,
    DELETE,
    MARK,
    UPDATE,
    authorize,
    create_access_token,
    get_current_user,
    hash_password,
    verify_password,
)
from cache import query_cache
from currency import SUPPORTED_CURRENCIES, exchange_rates
from database import (
    ATTENDANCE,
    BATCHES,
    COACHES,
    FINANCE,
    PLAYER_DATA,
    SESSIONS,
    USERS,
    create_document,
    fetch_collection,
    find_one,
    get_db,
    get_documents,
    id_query,
    ids_query,
    normalize_id,
)
from errors import AcademyError, NotFound, ValidationFailed
from exporter import (
    ExportJob,
    format_attendance_csv,
    format_batch_report,
    format_coaches_csv,
    format_financial_workbook,
    format_performance_csv,
    format_players_csv,
    format_sessions_csv,
    is_navigation_request,
    is_webview_request,
    webview_html,
    webview_payload,
)
from joiner import (
    batch_coach_ids,
    coach_view,
    fan_out,
    find_by_id,
    join_many,
    match_ids,
    merge_details,
    player_stub,
    resolve_batch,
)
from logging_config import setup_logging
from schemas import Attendancerecord, Batch as BatchSchema, Financialrecord, User as UserSchema

setup_logging()
logger = logging.getLogger(__name__)

EXPORT_COLLECTIONS = ("players", "coaches", "batches", "finances", "performance", "all")
CSV_COLLECTIONS = ("players", "coaches", "batches", "performance")
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.create_indexes()
    yield
    exchange_rates.close()


app = FastAPI(title="Academy Management API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AcademyError)
async def academy_error_handler(request: Request, exc: AcademyError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# -----------------------------
# Helpers
# -----------------------------

def require_academy(academy_id: Optional[str]) -> str:
    if not academy_id:
        raise HTTPException(status_code=400, detail="Academy ID is required")
    return academy_id


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in normalize_id(user).items() if k != "password_hash"}


def load_or_404(collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    doc = find_one(collection, doc_id)
    if not doc:
        raise NotFound(label, doc_id)
    return doc


def attachment(content: Any, filename: str, media_type: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def fetch_coaches(academy_id: str) -> List[Dict[str, Any]]:
    coaches = fetch_collection(USERS, academy_id, role="coach")
    details = fetch_collection(COACHES, academy_id)
    return merge_details(coaches, details, key="userId")


def fetch_coach_details(academy_id: str, batch: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Coach users plus their detail docs, for one batch's coach references."""
    coach_ids = batch_coach_ids(batch)
    if not coach_ids:
        return []
    users = get_documents(USERS, {"academyId": academy_id, "role": "coach", **ids_query(coach_ids)})
    if not users:
        return []
    user_ids = sorted(set().union(*(match_ids(u, ("id", "_id")) for u in users)))
    details = get_documents(COACHES, {"academyId": academy_id, "userId": {"$in": user_ids}})
    return merge_details(users, details, key="userId")


def performance_entries(academy_id: str) -> List[Dict[str, Any]]:
    players = fetch_collection(PLAYER_DATA, academy_id)
    entries = []
    for player in players:
        for entry in player.get("performanceHistory") or []:
            entries.append({"playerId": player.get("id"), "playerName": player.get("name"), **(entry or {})})
    return entries


def sessions_with_status(academy_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    sessions = fetch_collection(SESSIONS, academy_id)
    for s in sessions:
        s["status"] = derive_session_status(s, now)
    return sessions


def resolved_batches(academy_id: str) -> List[Dict[str, Any]]:
    batches = fetch_collection(BATCHES, academy_id)
    players = fetch_collection(PLAYER_DATA, academy_id)
    coach_lists = fan_out(batches, lambda b: fetch_coach_details(academy_id, b))
    return [resolve_batch(b, players, coaches) for b, coaches in zip(batches, coach_lists)]


def collect_export_data(collection: str, academy_id: str) -> Any:
    if collection == "players":
        return fetch_collection(PLAYER_DATA, academy_id)
    if collection == "coaches":
        return fetch_coaches(academy_id)
    if collection == "batches":
        return fetch_collection(BATCHES, academy_id)
    if collection == "finances":
        return fetch_collection(FINANCE, academy_id)
    if collection == "performance":
        return performance_entries(academy_id)
    return {
        "players": fetch_collection(PLAYER_DATA, academy_id),
        "coaches": fetch_collection(USERS, academy_id, role="coach"),
        "batches": fetch_collection(BATCHES, academy_id),
        "finances": fetch_collection(FINANCE, academy_id),
    }


# -----------------------------
# Health & meta
# -----------------------------

@app.get("/")
def root():
    return {"message": "Academy Management API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("MONGODB_URI") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("MONGODB_DB") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.ping():
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
        existing = set(get_db().list_collection_names())
        response["collections"] = [c for c in database.COLLECTIONS if c in existing]
    return response


# -----------------------------
# Auth
# -----------------------------

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class SignupPayload(BaseModel):
    username: str
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    # Owners are provisioned out of band, never through signup.
    role: Literal["admin", "coordinator", "coach", "player"] = "player"
    academyId: str


class LoginPayload(BaseModel):
    username: str
    password: str


class StatusPayload(BaseModel):
    status: Literal["active", "inactive"]


class PasswordConfirmation(BaseModel):
    password: str


def create_role_profile(user_id: str, payload: SignupPayload) -> None:
    """Player-data record for players, coach detail record for coaches."""
    base = {"userId": user_id, "name": payload.name, "email": payload.email, "academyId": payload.academyId}
    if payload.role == "player":
        create_document(PLAYER_DATA, {
            **base,
            "position": "",
            "attributes": {name: 0 for name in RATING_ATTRIBUTES},
            "performanceHistory": [],
        })
    elif payload.role == "coach":
        create_document(COACHES, {**base, "specialization": "", "experience": ""})


@app.post("/api/auth/signup", response_model=Token)
def signup(payload: SignupPayload):
    """New accounts other than admins start inactive until a manager enables them."""
    users = get_db()[USERS]
    if users.find_one({"$or": [{"username": payload.username}, {"email": payload.email}]}):
        raise HTTPException(status_code=400, detail="Username or email already registered")
    user = UserSchema(
        username=payload.username,
        name=payload.name,
        email=payload.email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        academyId=payload.academyId,
        status="active" if payload.role == "admin" else "inactive",
    )
    user_id = create_document(USERS, user)
    try:
        create_role_profile(user_id, payload)
    except PyMongoError as e:
        logger.error("Failed to create %s profile for %s, removing user: %s", payload.role, payload.username, e)
        users.delete_one({"id": user_id})
        query_cache.invalidate_prefix(f"{USERS}:")
        raise AcademyError("Failed to create user") from e
    logger.info("User %s signed up as %s in academy %s", payload.username, payload.role, payload.academyId)
    doc = users.find_one({"id": user_id})
    token = create_access_token({"sub": user_id, "role": user.role, "academyId": user.academyId})
    return Token(access_token=token, user=public_user(doc))


@app.post("/api/auth/login", response_model=Token)
def login(payload: LoginPayload):
    user = get_db()[USERS].find_one({"$or": [{"username": payload.username}, {"email": payload.username}]})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        logger.warning("Failed login for %s", payload.username)
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if user.get("status") == "inactive":
        raise HTTPException(status_code=403, detail="Account is inactive")
    user = normalize_id(user)
    token = create_access_token({"sub": user["id"], "role": user.get("role"), "academyId": user.get("academyId")})
    return Token(access_token=token, user=public_user(user))


@app.patch("/api/users/{user_id}/status")
def set_user_status(user_id: str, payload: StatusPayload, current=Depends(get_current_user)):
    target = load_or_404(USERS, user_id, "User")
    authorize(current, UPDATE, "user", target)
    get_db()[USERS].update_one(id_query(user_id), {"$set": {"status": payload.status, "updated_at": database.utcnow()}})
    query_cache.invalidate_prefix(f"{USERS}:")
    return public_user(find_one(USERS, user_id))


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, payload: PasswordConfirmation, current=Depends(get_current_user)):
    target = load_or_404(USERS, user_id, "User")
    if target["id"] != current["id"]:
        authorize(current, DELETE, "user", target)
    if not verify_password(payload.password, current.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Password verification failed")
    get_db()[USERS].delete_one(id_query(user_id))
    query_cache.invalidate_prefix(f"{USERS}:")
    logger.info("User %s deleted by %s", user_id, current["id"])
    return {"deleted": True}


# -----------------------------
# Players
# -----------------------------

@app.get("/api/db/ams-player-data")
def list_players(academyId: Optional[str] = None):
    players = fetch_collection(PLAYER_DATA, require_academy(academyId))
    for p in players:
        p["overallRating"] = calculate_overall_rating(p.get("attributes"))
        if not p.get("averagePerformance"):
            p["averagePerformance"] = calculate_average_performance(p.get("performanceHistory"))
    return players


# -----------------------------
# Batches
# -----------------------------

class BatchPayload(BaseModel):
    name: str
    academyId: str
    coachIds: List[str] = []
    coachNames: List[str] = []
    players: List[str] = []


class BatchUpdate(BaseModel):
    name: Optional[str] = None
    coachIds: Optional[List[str]] = None
    coachNames: Optional[List[str]] = None
    players: Optional[List[str]] = None


@app.get("/api/db/ams-batches")
def list_batches(academyId: Optional[str] = None):
    return fetch_collection(BATCHES, require_academy(academyId))


@app.post("/api/db/ams-batches")
def create_batch(payload: BatchPayload, current=Depends(get_current_user)):
    authorize(current, CREATE, "batch", {"academyId": payload.academyId})
    batch = BatchSchema(**payload.model_dump(), createdBy=current["id"])
    batch_id = create_document(BATCHES, batch)
    return find_one(BATCHES, batch_id)


@app.put("/api/db/ams-batches/{batch_id}")
def update_batch(batch_id: str, payload: BatchUpdate, current=Depends(get_current_user)):
    batch = load_or_404(BATCHES, batch_id, "Batch")
    authorize(current, UPDATE, "batch", batch)
    updates = payload.model_dump(exclude_none=True)
    if updates:
        updates["updated_at"] = database.utcnow()
        get_db()[BATCHES].update_one(id_query(batch_id), {"$set": updates})
        query_cache.invalidate_prefix(f"{BATCHES}:")
    return find_one(BATCHES, batch_id)


@app.delete("/api/db/ams-batches/{batch_id}")
def delete_batch(batch_id: str, current=Depends(get_current_user)):
    batch = load_or_404(BATCHES, batch_id, "Batch")
    authorize(current, DELETE, "batch", batch)
    result = get_db()[BATCHES].delete_one(id_query(batch_id))
    query_cache.invalidate_prefix(f"{BATCHES}:")
    logger.info("Batch %s deleted by %s", batch_id, current["id"])
    return {"success": True, "deletedCount": result.deleted_count}


@app.get("/api/db/ams-batches/{batch_id}/players")
def batch_players(batch_id: str):
    batch = load_or_404(BATCHES, batch_id, "Batch")
    players = fetch_collection(PLAYER_DATA, batch.get("academyId"))
    return {"success": True, "data": join_many(batch.get("players"), players, player_stub)}


@app.get("/api/db/ams-batches/{batch_id}/coaches")
def batch_coaches(batch_id: str):
    batch = load_or_404(BATCHES, batch_id, "Batch")
    coaches = fetch_coaches(batch.get("academyId"))
    return {"success": True, "data": resolve_batch(batch, [], coaches)["coaches"]}


# -----------------------------
# Sessions
# -----------------------------

@app.get("/api/db/ams-sessions")
def list_sessions(academyId: Optional[str] = None):
    academy_id = require_academy(academyId)
    sessions = sessions_with_status(academy_id)
    batches = fetch_collection(BATCHES, academy_id)
    for s in sessions:
        s["assignedBatchName"] = (find_by_id(batches, s.get("assignedBatch")) or {}).get("name", "")
    return sessions


# -----------------------------
# Attendance
# -----------------------------

class AttendancePayload(BaseModel):
    academyId: str
    userId: str
    date: str
    status: Literal["present", "absent", "late"]
    type: Literal["players", "coaches"]
    markedBy: Optional[str] = None


@app.get("/api/db/ams-attendance")
def list_attendance(academyId: Optional[str] = None, date: Optional[str] = None, type: Optional[str] = None):
    filters = {}
    if date:
        filters["date"] = date
    if type:
        filters["type"] = type
    return fetch_collection(ATTENDANCE, require_academy(academyId), **filters)


@app.post("/api/db/ams-attendance")
def mark_attendance(payload: AttendancePayload, current=Depends(get_current_user)):
    """Upsert keyed on (academyId, userId, date, type): marking twice updates the record."""
    authorize(current, MARK, "attendance", {"academyId": payload.academyId})
    record = Attendancerecord(**{**payload.model_dump(), "markedBy": payload.markedBy or current["id"]})
    key = {"academyId": record.academyId, "userId": record.userId, "date": record.date, "type": record.type}
    now = database.utcnow()
    doc = get_db()[ATTENDANCE].find_one_and_update(
        key,
        {
            "$set": {"status": record.status, "markedBy": record.markedBy, "updated_at": now},
            "$setOnInsert": {"id": secrets.token_hex(12), "created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    query_cache.invalidate_prefix(f"{ATTENDANCE}:")
    return normalize_id(doc)


@app.get("/api/db/ams-attendance/summary")
def attendance_summary(
    academyId: Optional[str] = None,
    userId: str = Query(...),
    type: Optional[str] = None,
    includeLate: bool = False,
):
    filters = {"type": type} if type else {}
    records = fetch_collection(ATTENDANCE, require_academy(academyId), **filters)
    user_records = [r for r in records if str(r.get("userId")) == userId]
    summary = summarize_user_attendance(records, userId, include_late=includeLate)
    present_days = len({r.get("date") for r in user_records if (r.get("status") in ("present", "late") if includeLate else r.get("status") == "present")})
    summary.update({
        "presentStrict": present_strict(user_records),
        "presentInclusiveOfLate": present_inclusive_of_late(user_records),
        "yearPercentage": attendance_percentage(present_days),
    })
    return summary


# -----------------------------
# Finance
# -----------------------------

class FinancePayload(BaseModel):
    academyId: str
    type: Literal["income", "expense"]
    amount: float = Field(..., gt=0)
    quantity: int = Field(1, ge=1)
    description: Optional[str] = None
    date: Optional[str] = None
    documentUrl: Optional[str] = None


class FinanceStatus(BaseModel):
    status: Literal["active", "deleted"]


def new_transaction_id() -> str:
    return f"TXN-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"


@app.get("/api/db/ams-finance")
def list_finance(academyId: Optional[str] = None):
    records = [r for r in fetch_collection(FINANCE, require_academy(academyId)) if r.get("status") != "deleted"]
    return sorted(records, key=lambda r: str(r.get("date") or ""), reverse=True)


@app.post("/api/db/ams-finance")
def create_finance(payload: FinancePayload, current=Depends(get_current_user)):
    authorize(current, CREATE, "finance", {"academyId": payload.academyId})
    record = Financialrecord(
        transactionId=new_transaction_id(),
        academyId=payload.academyId,
        type=payload.type,
        amount=payload.amount,
        quantity=payload.quantity,
        description=payload.description,
        date=payload.date or datetime.now(timezone.utc).isoformat(),
        documentId=payload.documentUrl.rstrip("/").split("/")[-1] if payload.documentUrl else None,
    )
    record_id = create_document(FINANCE, record)
    return find_one(FINANCE, record_id)


@app.patch("/api/db/ams-finance/{record_id}")
def set_finance_status(record_id: str, payload: FinanceStatus, current=Depends(get_current_user)):
    """Deletion is a soft status flip."""
    record = load_or_404(FINANCE, record_id, "Transaction")
    authorize(current, UPDATE, "finance", record)
    get_db()[FINANCE].update_one(id_query(record_id), {"$set": {"status": payload.status, "updated_at": database.utcnow()}})
    query_cache.invalidate_prefix(f"{FINANCE}:")
    return {"success": True}


@app.get("/api/db/ams-finance/totals")
def finance_totals(academyId: Optional[str] = None, currency: str = "INR"):
    if currency not in SUPPORTED_CURRENCIES:
        raise ValidationFailed(f"Unsupported currency {currency}", field="currency")
    records = fetch_collection(FINANCE, require_academy(academyId))
    rates = exchange_rates.get_rates() if currency != "INR" else {}
    return {"inr": financial_totals(records), "converted": converted_totals(records, currency, rates)}


# -----------------------------
# Export
# -----------------------------

@app.get("/api/db/export")
def export_data(request: Request, academyId: Optional[str] = None, collection: Optional[str] = None):
    academy_id = require_academy(academyId)
    if collection not in EXPORT_COLLECTIONS:
        raise HTTPException(status_code=400, detail="Invalid collection specified")

    webview = is_webview_request(request.headers)

    def deliver(data):
        if webview and is_navigation_request(request.headers):
            return HTMLResponse(webview_html(data, collection))
        if webview:
            return webview_payload(data, collection)
        return data

    job = ExportJob(f"{collection}:{academy_id}")
    return job.run(lambda: collect_export_data(collection, academy_id), lambda data: data, deliver)


@app.get("/api/db/export/sessions-csv")
def export_sessions_csv(academyId: Optional[str] = None):
    academy_id = require_academy(academyId)
    filename = f"sessions_export_{academy_id}_{date.today().isoformat()}.csv"
    job = ExportJob(f"sessions:{academy_id}")
    return job.run(
        lambda: (fetch_collection(SESSIONS, academy_id), fetch_collection(BATCHES, academy_id)),
        lambda data: format_sessions_csv(*data),
        lambda csv_text: attachment(csv_text, filename, "text/csv; charset=utf-8"),
    )


@app.get("/api/db/export/csv")
def export_csv(academyId: Optional[str] = None, collection: Optional[str] = None):
    academy_id = require_academy(academyId)
    if collection not in CSV_COLLECTIONS:
        raise HTTPException(status_code=400, detail="Invalid collection specified")

    fetchers = {
        "players": (lambda: fetch_collection(PLAYER_DATA, academy_id), format_players_csv, "players.csv"),
        "coaches": (lambda: [coach_view(c) for c in fetch_coaches(academy_id)], format_coaches_csv, "coaches.csv"),
        "batches": (lambda: resolved_batches(academy_id), format_batch_report, "batches.csv"),
        "performance": (lambda: performance_entries(academy_id), format_performance_csv, "performance_history.csv"),
    }
    fetch, fmt, filename = fetchers[collection]
    job = ExportJob(f"{collection}-csv:{academy_id}")
    return job.run(fetch, fmt, lambda csv_text: attachment(csv_text, filename, "text/csv; charset=utf-8"))


@app.get("/api/db/export/attendance-csv")
def export_attendance_csv(academyId: Optional[str] = None):
    academy_id = require_academy(academyId)
    filename = f"attendance_report_{date.today().isoformat()}.csv"
    job = ExportJob(f"attendance:{academy_id}")
    return job.run(
        lambda: (fetch_collection(USERS, academy_id, role="player"), sessions_with_status(academy_id)),
        lambda data: format_attendance_csv(*data),
        lambda csv_text: attachment(csv_text, filename, "text/csv; charset=utf-8"),
    )


@app.get("/api/db/export/finances-xlsx")
def export_finances_xlsx(academyId: Optional[str] = None):
    academy_id = require_academy(academyId)
    job = ExportJob(f"finances-xlsx:{academy_id}")
    return job.run(
        lambda: fetch_collection(FINANCE, academy_id),
        format_financial_workbook,
        lambda content: attachment(content, "financial_records.xlsx", XLSX_MIME),
    )


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
