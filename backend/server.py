from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone
import jwt

from inbound_flow_engine import InboundFlowResult, FlowFacts, FlowError
from inbound_flow_service import InboundFlowService

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'warehouse_db')]

app = FastAPI(title="Warehouse Inbound Flow API")

# ==================== CORS CONFIGURATION (MUST BE FIRST) ====================
# Default allowed origins for local development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

cors_origins_env = os.environ.get('CORS_ORIGINS', '')
if cors_origins_env:
    cors_origins = [origin.strip() for origin in cors_origins_env.split(',') if origin.strip()]
else:
    cors_origins = DEFAULT_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Requested-With",
        "Accept",
        "Origin",
    ],
    max_age=600,  # Cache preflight for 10 minutes
)

# ==================== HEALTH ENDPOINT (ROOT LEVEL) ====================
@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "service": "Warehouse Inbound Flow API",
        "version": "1.0.0"
    }

api_router = APIRouter(prefix="/api")

# JWT Configuration
SECRET_KEY = os.environ.get('JWT_SECRET', 'warehouse-secret-key-change-in-production')
ALGORITHM = "HS256"

security = HTTPBearer()

# Flow error code -> HTTP status
FLOW_ERROR_STATUS = {
    "EMPTY_TOKEN": 400,
    "UNRESOLVABLE": 404,
    "FLOW_NOT_FOUND": 404,
    "TRANSPORT_ERROR": 503,
}

# ==================== HELPER FUNCTIONS ====================

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        token = credentials.credentials
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        if user is None:
            raise HTTPException(status_code=401, detail="User not found")
        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_flow_service() -> InboundFlowService:
    return InboundFlowService(db)

def raise_flow_http_error(error: dict):
    """Turn a flow error payload into an HTTPException"""
    status_code = FLOW_ERROR_STATUS.get(error.get("error_code"), 500)
    detail = dict(error)
    if error.get("error_code") in ("UNRESOLVABLE", "FLOW_NOT_FOUND"):
        detail["message"] = f"Nothing found for reference '{error.get('token') or ''}'."
    raise HTTPException(status_code=status_code, detail=detail)

# ==================== INBOUND FLOW ====================

@api_router.get("/inbound-flow/resolve", response_model=InboundFlowResult)
async def resolve_inbound_flow(
    token: Optional[str] = Query(None, description="PO, GRN, gate pass, LR, invoice or label UID"),
    current_user: dict = Depends(get_current_user),
    service: InboundFlowService = Depends(get_flow_service),
):
    """Resolve a reference to its PO and return the derived inbound flow with KPIs"""
    result = await service.resolve_and_derive_flow(token)
    if not result.ok:
        raise_flow_http_error(result.errors[0])
    return result

@api_router.get("/inbound-flow/facts", response_model=FlowFacts)
async def get_inbound_flow_facts(
    token: Optional[str] = Query(None, description="PO, GRN, gate pass, LR, invoice or label UID"),
    current_user: dict = Depends(get_current_user),
    service: InboundFlowService = Depends(get_flow_service),
):
    """Compact stage statuses and document lists for a reference"""
    try:
        return await service.get_flow_facts(token)
    except FlowError as e:
        raise_flow_http_error(e.to_payload())


app.include_router(api_router)
# API routes registered

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@app.on_event("startup")
async def startup_event():
    try:
        await db.inbound_flows.create_index([("po_no", 1)], unique=True, name="inbound_flow_po_unique")
        await db.grn_postings.create_index([("grn_no", 1)], name="grn_no_idx")
        await db.grn_postings.create_index([("po_no", 1)], name="grn_po_no_idx")
        await db.label_prints.create_index([("uid", 1), ("printed_at", -1)], name="label_uid_idx")
        logging.info("Inbound flow lookup indexes created")
    except Exception as e:
        logging.warning(f"Failed to create inbound flow indexes: {e}")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
