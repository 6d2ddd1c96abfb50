import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import stripe
from bson import ObjectId
from fastapi import FastAPI, UploadFile, File, Form, HTTPException, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger

import cache
import database
from ai_services import (
    analyze_contract_with_ai,
    chat_with_contract,
    detect_contract_type,
    extract_text_from_pdf,
    tier_for,
)
from auth import (
    SESSION_COOKIE,
    SESSION_LIFETIME,
    STATE_COOKIE,
    OAuthError,
    create_session,
    delete_session,
    fetch_google_profile,
    get_current_user,
    google_authorize_url,
    upsert_google_user,
)
from config import (
    AI_MODEL,
    CLIENT_URL,
    CORS_ORIGINS,
    PORT,
    SESSION_COOKIE_SECURE,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)
from database import DatabaseUnavailable, create_document, get_collection, get_documents, utcnow
from email_services import send_premium_confirmation_email
from schemas import ChatMessage, ChatRequest, ContractAnalysis

stripe.api_key = STRIPE_SECRET_KEY


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes()
    yield


app = FastAPI(title="ContractIQ API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def access_log(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("{} {} {} {:.1f} ms", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


@app.exception_handler(DatabaseUnavailable)
async def database_unavailable(request: Request, exc: DatabaseUnavailable):
    return JSONResponse(status_code=503, content={"detail": "Database not available"})


# ----------------------
# Helpers
# ----------------------
PDF_MIME_TYPE = "application/pdf"
MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB
FREE_PLAN_CONTRACT_LIMIT = 5
LIFETIME_PRICE_CENTS = 5000


def _serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in doc.items():
        if isinstance(v, ObjectId):
            v = str(v)
        elif isinstance(v, datetime):
            v = v.isoformat()
        out[k] = v
    return out


def _object_id(contract_id: str) -> ObjectId:
    if not ObjectId.is_valid(contract_id):
        raise HTTPException(status_code=400, detail="Invalid contract ID")
    return ObjectId(contract_id)


def _require_pdf(contract: Optional[UploadFile]) -> UploadFile:
    if contract is None or not contract.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if contract.content_type != PDF_MIME_TYPE:
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")
    return contract


def _read_pdf(contract: Optional[UploadFile]) -> bytes:
    content = _require_pdf(contract).file.read(MAX_FILE_SIZE + 1)
    if len(content) > MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File exceeds 50MB limit")
    return content


def _find_owned_contract(contract_id: str, user_id: str) -> Dict[str, Any]:
    oid = _object_id(contract_id)
    doc = get_collection("contractanalysis").find_one({"_id": oid, "userId": user_id})
    if not doc:
        raise HTTPException(status_code=404, detail="Contract not found")
    return doc


def enforce_free_plan_limit(user: Dict[str, Any]):
    if user.get("isPremium"):
        return
    count = get_collection("contractanalysis").count_documents({"userId": user["_id"]})
    if count >= FREE_PLAN_CONTRACT_LIMIT:
        raise HTTPException(
            status_code=403,
            detail=f"Free plan is limited to {FREE_PLAN_CONTRACT_LIMIT} contracts. Upgrade to premium for unlimited contracts.",
        )


# ----------------------
# Auth Endpoints (Google sign-in)
# ----------------------
@app.get("/auth/google")
def google_login():
    state = secrets.token_urlsafe(16)
    try:
        url = google_authorize_url(state)
    except OAuthError:
        logger.exception("Google sign-in is not configured")
        raise HTTPException(status_code=503, detail="Google sign-in not configured")
    response = RedirectResponse(url, status_code=302)
    response.set_cookie(STATE_COOKIE, state, max_age=600, httponly=True, samesite="lax", secure=SESSION_COOKIE_SECURE)
    return response


@app.get("/auth/google/callback")
def google_callback(request: Request, code: Optional[str] = None, state: Optional[str] = None):
    expected_state = request.cookies.get(STATE_COOKIE)
    failure = RedirectResponse(f"{CLIENT_URL}/login", status_code=302)
    failure.delete_cookie(STATE_COOKIE)
    if not code or not state or not expected_state or not secrets.compare_digest(state, expected_state):
        logger.warning("Google callback rejected: missing code or state mismatch")
        return failure
    try:
        profile = fetch_google_profile(code)
    except OAuthError:
        logger.exception("Google token exchange failed")
        return failure
    user_id = upsert_google_user(profile)
    token = create_session(user_id)
    logger.info("User {} signed in", user_id)

    response = RedirectResponse(f"{CLIENT_URL}/dashboard", status_code=302)
    response.delete_cookie(STATE_COOKIE)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=int(SESSION_LIFETIME.total_seconds()),
        httponly=True,
        samesite="lax",
        secure=SESSION_COOKIE_SECURE,
    )
    return response


@app.get("/auth/current-user")
def current_user(user: dict = Depends(get_current_user)):
    return _serialize(user)


@app.post("/auth/logout")
def logout(request: Request, authorization: Optional[str] = Header(None), user: dict = Depends(get_current_user)):
    token = request.cookies.get(SESSION_COOKIE)
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    if token:
        delete_session(token)
    response = JSONResponse({"message": "Logged out"})
    response.delete_cookie(SESSION_COOKIE)
    return response


# ----------------------
# Contracts: Detect, Analyze, List, Get, Delete
# ----------------------
@app.post("/contracts/detect-type")
def detect_type(
    contract: Optional[UploadFile] = File(None),
    user: dict = Depends(get_current_user),
):
    content = _read_pdf(contract)
    try:
        file_key = cache.upload_key(user["_id"])
        cache.cache_upload(file_key, content)
        text = extract_text_from_pdf(file_key)
        detected_type = detect_contract_type(text)
        # failure paths leave the upload to expire
        cache.delete_key(file_key)
    except Exception:
        logger.exception("Contract type detection failed for user {}", user["_id"])
        raise HTTPException(status_code=500, detail="Failed to detect contract type")
    return {"detectedType": detected_type}


@app.post("/contracts/analyze")
def analyze_contract(
    contract: Optional[UploadFile] = File(None),
    contract_type: Optional[str] = Form(None, alias="contractType"),
    user: dict = Depends(get_current_user),
):
    _require_pdf(contract)
    if not contract_type or not contract_type.strip():
        raise HTTPException(status_code=400, detail="Contract type is required")
    enforce_free_plan_limit(user)
    content = _read_pdf(contract)

    try:
        file_key = cache.upload_key(user["_id"])
        cache.cache_upload(file_key, content)
        text = extract_text_from_pdf(file_key)
        if not text.strip():
            raise ValueError("No text could be extracted from the contract")
        result = analyze_contract_with_ai(text, tier_for(user), contract_type.strip())
        analysis = ContractAnalysis(
            user_id=user["_id"],
            contract_text=text,
            contract_type=contract_type.strip(),
            ai_model=AI_MODEL,
            language="en",
            created_at=utcnow(),
            **result,
        )
        doc = analysis.model_dump(by_alias=True)
        contract_id = create_document("contractanalysis", doc)
        cache.delete_key(file_key)
    except Exception:
        logger.exception("Contract analysis failed for user {}", user["_id"])
        raise HTTPException(status_code=500, detail="Failed to analyze contract")

    logger.info("Contract {} analyzed for user {} ({})", contract_id, user["_id"], analysis.contract_type)
    return _serialize({"_id": contract_id, **doc})


@app.get("/contracts/user-contracts")
def user_contracts(user: dict = Depends(get_current_user)):
    docs = get_documents("contractanalysis", {"userId": user["_id"]}, sort=[("createdAt", -1)])
    return [_serialize(d) for d in docs]


@app.get("/contracts/{contract_id}")
def get_contract(contract_id: str, user: dict = Depends(get_current_user)):
    oid = _object_id(contract_id)
    key = cache.contract_key(user["_id"], contract_id)
    cached = cache.get_json(key)
    if cached is not None:
        return cached

    doc = get_collection("contractanalysis").find_one({"_id": oid, "userId": user["_id"]})
    if not doc:
        raise HTTPException(status_code=404, detail="Contract not found")
    record = _serialize(doc)
    cache.set_json(key, record)
    return record


@app.delete("/contracts/{contract_id}")
def delete_contract(contract_id: str, user: dict = Depends(get_current_user)):
    doc = _find_owned_contract(contract_id, user["_id"])
    get_collection("contractanalysis").delete_one({"_id": doc["_id"]})
    get_collection("chatmessage").delete_many({"contractId": contract_id, "userId": user["_id"]})
    cache.delete_key(cache.contract_key(user["_id"], contract_id))
    logger.info("Contract {} deleted by user {}", contract_id, user["_id"])
    return {"message": "Contract deleted"}


# ----------------------
# Chat per contract (premium)
# ----------------------
@app.get("/contracts/{contract_id}/chat")
def chat_history(contract_id: str, user: dict = Depends(get_current_user)):
    _find_owned_contract(contract_id, user["_id"])
    msgs = get_documents("chatmessage", {"contractId": contract_id, "userId": user["_id"]}, sort=[("createdAt", 1)])
    return [_serialize(m) for m in msgs]


@app.post("/contracts/{contract_id}/chat")
def chat_send(contract_id: str, req: ChatRequest, user: dict = Depends(get_current_user)):
    if not user.get("isPremium"):
        raise HTTPException(status_code=403, detail="Chat is a premium feature")
    doc = _find_owned_contract(contract_id, user["_id"])
    history = get_documents("chatmessage", {"contractId": contract_id, "userId": user["_id"]}, sort=[("createdAt", 1)])
    analysis = {k: v for k, v in _serialize(doc).items() if k not in ("_id", "userId", "contractText")}

    try:
        reply = chat_with_contract(doc["contractText"], analysis, history, req.message)
    except Exception:
        logger.exception("Contract chat failed for contract {}", contract_id)
        raise HTTPException(status_code=500, detail="Failed to answer question")

    asked_at = utcnow()
    create_document("chatmessage", ChatMessage(
        user_id=user["_id"], contract_id=contract_id, role="user", content=req.message, created_at=asked_at))
    create_document("chatmessage", ChatMessage(
        user_id=user["_id"], contract_id=contract_id, role="assistant", content=reply, created_at=utcnow()))
    return {"reply": reply}


# ----------------------
# Payments (Stripe)
# ----------------------
@app.get("/payments/create-checkout-session")
def create_checkout_session(user: dict = Depends(get_current_user)):
    if not STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Payments not configured")
    if user.get("isPremium"):
        raise HTTPException(status_code=400, detail="Already a premium member")
    try:
        session = stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": "Lifetime Subscription"},
                    "unit_amount": LIFETIME_PRICE_CENTS,
                },
                "quantity": 1,
            }],
            mode="payment",
            success_url=f"{CLIENT_URL}/payment-success",
            cancel_url=f"{CLIENT_URL}/payment-cancel",
            client_reference_id=user["_id"],
            customer_email=user.get("email"),
        )
    except stripe.StripeError:
        logger.exception("Stripe checkout session creation failed for user {}", user["_id"])
        raise HTTPException(status_code=500, detail="Failed to create checkout session")
    return {"sessionId": session.id}


@app.get("/payments/membership-status")
def membership_status(user: dict = Depends(get_current_user)):
    return {"subscriptionStatus": "active" if user.get("isPremium") else "inactive"}


@app.post("/payments/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    # signature check needs the raw body; the rest talks to Mongo and Resend
    payload = await request.body()
    return await run_in_threadpool(_handle_stripe_webhook, payload, stripe_signature)


def _handle_stripe_webhook(payload: bytes, stripe_signature: Optional[str]):
    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Rejected Stripe webhook: {}", e)
        raise HTTPException(status_code=400, detail="Webhook signature verification failed")

    if event["type"] == "checkout.session.completed":
        checkout = event["data"]["object"]
        user_id = checkout["client_reference_id"]
        if user_id and ObjectId.is_valid(user_id):
            users = get_collection("user")
            users.update_one({"_id": ObjectId(user_id)}, {"$set": {"isPremium": True}})
            user = users.find_one({"_id": ObjectId(user_id)})
            if user:
                logger.info("User {} upgraded to premium", user_id)
                send_premium_confirmation_email(user["email"], user.get("displayName") or user["email"])
        else:
            logger.warning("checkout.session.completed without a usable client_reference_id")
    return {"received": True}


# ----------------------
# Status
# ----------------------
@app.get("/")
def root():
    return {"name": "ContractIQ API", "status": "ok"}


@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "cache": "unreachable",
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "connected"
        except Exception as e:
            response["database"] = f"error: {str(e)[:50]}"
    if cache.ping():
        response["cache"] = "connected"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
