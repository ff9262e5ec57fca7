"""
Calaveritas Web Application
FastAPI backend that writes Day of the Dead calaveras with Gemini, one quota per email.
"""

import os
import sys
import asyncio
import logging
from datetime import datetime
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Request, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

# Security imports
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from access_policy import AccessPolicy, is_valid_email
from db_store import Database, GeneratedArtifact
from errors import GenerationError, GenerationFailed, StorageUnavailable
from gemini_client import GeminiClient
from generation_service import GenerationCoordinator
from params_config import GEMINI_MODEL, MAX_GENERATIONS

# Configure logging based on environment
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

# Configuration
ENVIRONMENT = os.environ.get("ENVIRONMENT", "production").lower()
RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"
REQUEST_RATE_LIMIT = os.environ.get("REQUEST_RATE_LIMIT", "10/minute")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "ALLOWED_ORIGINS",
        "http://localhost:5173,https://tolkogroup.com,https://www.tolkogroup.com"
    ).split(",")
    if origin.strip()
]
if FRONTEND_URL and FRONTEND_URL not in ALLOWED_ORIGINS:
    ALLOWED_ORIGINS.append(FRONTEND_URL)

logger.info(f"Environment: {ENVIRONMENT}")
logger.info(f"Gemini model: {GEMINI_MODEL}")
logger.info(f"Generations per email: {MAX_GENERATIONS}")
logger.info(f"Request rate limiting: {RATE_LIMIT_ENABLED} ({REQUEST_RATE_LIMIT})")
logger.info(f"CORS origins: {ALLOWED_ORIGINS}")


class CalaveraRequest(BaseModel):
    """Form fields sent by the frontend."""
    nombre: Optional[str] = None
    gustos: Optional[str] = None
    profesion: Optional[str] = None
    email: Optional[str] = None
    tono: Optional[str] = None
    puesto: Optional[str] = None


class CalaveraResponse(BaseModel):
    id: int
    calavera: str
    imagenFondoId: str


class CalaveraListItem(BaseModel):
    id: int
    nombre: Optional[str] = None
    texto_generado: str
    fecha_creacion: str
    imagen_fondo_id: str

    @classmethod
    def from_artifact(cls, artifact: GeneratedArtifact) -> "CalaveraListItem":
        return cls(
            id=artifact.id,
            nombre=artifact.request_details.get("nombre"),
            texto_generado=artifact.content,
            fecha_creacion=artifact.created_at,
            imagen_fondo_id=artifact.background_ref,
        )


# Shared services (created lazily so importing the module has no side effects)
_database: Optional[Database] = None
_coordinator: Optional[GenerationCoordinator] = None


def get_database() -> Database:
    global _database
    if _database is None:
        _database = Database()
    return _database


def get_coordinator() -> GenerationCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = GenerationCoordinator(
            db=get_database(),
            generator=GeminiClient(),
            policy=AccessPolicy(),
        )
    return _coordinator


def error_response(exc: GenerationError) -> HTTPException:
    """Map a generation error to an HTTP error without leaking internals."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

app = FastAPI(
    title="Calaveritas API",
    version="1.0.0",
    docs_url="/docs" if ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if ENVIRONMENT == "development" else None,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies get the same 400 shape as the field checks."""
    logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"detail": {"error": "invalid_request", "message": "Los datos enviados no son válidos."}},
    )


# Add CORS middleware
is_dev = ENVIRONMENT == "development"
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if is_dev else ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


# Security headers middleware
@app.middleware("http")
async def add_security_headers(request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if not is_dev:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    get_database().init_db()
    logger.info("Application started")


@app.on_event("shutdown")
async def shutdown_event():
    if _coordinator is not None:
        _coordinator.close()
    if _database is not None:
        _database.close()


# ============= CALAVERA ROUTES =============

@app.post("/api/generar-calavera", status_code=201, response_model=CalaveraResponse)
@limiter.limit(REQUEST_RATE_LIMIT)
async def generar_calavera(
    request: Request,
    body: CalaveraRequest,
    coordinator: GenerationCoordinator = Depends(get_coordinator),
):
    """
    Generate a calavera for the submitted details.

    Validates the input and email domain, enforces the per-email limit, calls
    Gemini, stores the result and returns it with its background token.
    """
    logger.info("API REQUEST: POST /api/generar-calavera")

    if not body.nombre or not body.nombre.strip():
        raise HTTPException(
            status_code=400,
            detail={"error": "missing_name", "message": "El nombre es obligatorio."},
        )
    email = body.email or ""
    if not is_valid_email(email):
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_email", "message": "Por favor, ingresa un correo electrónico válido."},
        )
    if not body.tono or not body.tono.strip():
        raise HTTPException(
            status_code=400,
            detail={"error": "missing_tone", "message": "Debes seleccionar un tono para la calaverita."},
        )

    details = {
        "nombre": body.nombre.strip(),
        "gustos": (body.gustos or "").strip(),
        "profesion": (body.profesion or "").strip(),
        "tono": body.tono.strip(),
        "puesto": (body.puesto or "").strip(),
    }

    try:
        artifact = await coordinator.generate(email, details)
    except (GenerationFailed, StorageUnavailable) as exc:
        logger.error(f"Error in POST /api/generar-calavera for {email}: {exc.message}")
        raise error_response(exc)
    except GenerationError as exc:
        raise error_response(exc)

    return CalaveraResponse(
        id=artifact.id,
        calavera=artifact.content,
        imagenFondoId=artifact.background_ref,
    )


@app.get("/api/calaveras", response_model=List[CalaveraListItem])
async def get_calaveras(
    email: str = Query(""),
    coordinator: GenerationCoordinator = Depends(get_coordinator),
):
    """Calaveras previously generated for an email, newest first."""
    logger.info(f"Looking up calaveras for: {email}")
    try:
        artifacts = await coordinator.list_artifacts(email)
    except StorageUnavailable as exc:
        logger.error(f"Error in GET /api/calaveras: {exc.message}")
        raise HTTPException(
            status_code=500,
            detail={"error": exc.code, "message": "Error al obtener las calaveras personales."},
        )
    except GenerationError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"error": exc.code, "message": "Se requiere un email válido para ver la galería personal."},
        )

    return [CalaveraListItem.from_artifact(a) for a in artifacts]


@app.get("/api/usage")
async def get_usage(
    email: str = Query(""),
    coordinator: GenerationCoordinator = Depends(get_coordinator),
):
    """Quota information for an email."""
    try:
        usage = await coordinator.get_usage(email)
    except StorageUnavailable as exc:
        logger.error(f"Error in GET /api/usage: {exc.message}")
        raise error_response(exc)
    except GenerationError as exc:
        raise error_response(exc)
    return usage.to_dict()


# ============= MONITORING =============

@app.get("/", response_class=PlainTextResponse)
async def root():
    return "API de Calaveritas funcionando! 🎉"


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": "1.0.0",
    }


@app.get("/ready")
async def readiness_check(db: Database = Depends(get_database)):
    """Readiness check: the database answers."""
    ready = await asyncio.to_thread(db.ping)
    return {
        "ready": ready,
        "database": db.backend,
        "timestamp": datetime.now().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "3000")))
