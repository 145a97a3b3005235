import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import UserService, current_actor, get_user_service, require_roles, user_view
from config import Settings, configure_logging, load_settings
from database import LotRepository, SpeciesRepository, UserRepository, connect, utcnow
from errors import AppError
from lots import LotTracker
from qr import DEFAULT_SIZE, QRGenerator
from schemas import (
    Actor,
    BatchQRRequest,
    GrowthMeasurementIn,
    HarvestIn,
    HealthObservationIn,
    LoginIn,
    PasswordChange,
    PhotoIn,
    PlantLot,
    PlantLotUpdate,
    PlantSpecies,
    PlantSpeciesUpdate,
    ProfileUpdate,
    User,
)
from species import SpeciesCatalog, species_view

logger = logging.getLogger(__name__)


# Helpers
def ok(data=None, message: Optional[str] = None, pagination: Optional[dict] = None):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


def get_catalog(request: Request) -> SpeciesCatalog:
    return request.app.state.catalog


def get_tracker(request: Request) -> LotTracker:
    return request.app.state.tracker


def get_qr(request: Request) -> QRGenerator:
    return request.app.state.qr


def base_url(request: Request) -> str:
    configured = request.app.state.settings.public_base_url
    return (configured or str(request.base_url)).rstrip("/")


# ---------------- Auth Endpoints ----------------
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/register", status_code=201)
def register(data: User, users: UserService = Depends(get_user_service)):
    user, token = users.register(data)
    return ok({"user": user_view(user), "token": token}, "User registered successfully")


@auth_router.post("/login")
def login(credentials: LoginIn, users: UserService = Depends(get_user_service)):
    user, token = users.login(credentials)
    return ok({"user": user_view(user), "token": token}, "Login successful")


@auth_router.get("/profile")
def get_profile(actor: Actor = Depends(current_actor), users: UserService = Depends(get_user_service)):
    return ok(user_view(users.get(actor.id)))


@auth_router.put("/profile")
def update_profile(changes: ProfileUpdate, actor: Actor = Depends(current_actor),
                   users: UserService = Depends(get_user_service)):
    return ok(user_view(users.update_profile(actor, changes)), "Profile updated successfully")


@auth_router.put("/change-password")
def change_password(change: PasswordChange, actor: Actor = Depends(current_actor),
                    users: UserService = Depends(get_user_service)):
    users.change_password(actor, change)
    return ok(message="Password changed successfully")


# ---------------- Species Endpoints ----------------
species_router = APIRouter(prefix="/api/species", tags=["species"])


@species_router.post("", status_code=201)
def create_species(species: PlantSpecies, actor: Actor = Depends(current_actor),
                   catalog: SpeciesCatalog = Depends(get_catalog)):
    return ok(species_view(catalog.register(species, actor)))


@species_router.get("")
def list_species(category: Optional[str] = None, include_inactive: bool = False,
                 actor: Actor = Depends(current_actor), catalog: SpeciesCatalog = Depends(get_catalog)):
    return ok([species_view(s) for s in catalog.list(category, include_inactive)])


@species_router.get("/code/{code}")
def get_species_by_code(code: str, actor: Actor = Depends(current_actor),
                        catalog: SpeciesCatalog = Depends(get_catalog)):
    return ok(species_view(catalog.get_by_code(code)))


@species_router.get("/{species_id}")
def get_species(species_id: str, actor: Actor = Depends(current_actor),
                catalog: SpeciesCatalog = Depends(get_catalog)):
    return ok(species_view(catalog.lookup(species_id)))


@species_router.put("/{species_id}")
def update_species(species_id: str, changes: PlantSpeciesUpdate, actor: Actor = Depends(current_actor),
                   catalog: SpeciesCatalog = Depends(get_catalog)):
    return ok(species_view(catalog.update(species_id, changes, actor)))


@species_router.delete("/{species_id}")
def deactivate_species(species_id: str, actor: Actor = Depends(require_roles("manager")),
                       catalog: SpeciesCatalog = Depends(get_catalog)):
    return ok(species_view(catalog.deactivate(species_id, actor)), "Plant species deactivated")


# ---------------- Lot Endpoints ----------------
lot_router = APIRouter(prefix="/api/lots", tags=["lots"])


@lot_router.get("/stats")
def lot_stats(actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.stats())


@lot_router.get("/ready")
def lots_ready_for_harvest(actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    now = utcnow()
    return ok(tracker.views(tracker.find_ready_for_harvest(now), now))


@lot_router.get("/unharvested")
def unharvested_lots(actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.views(tracker.find_unharvested()))


@lot_router.get("/mine")
def my_lots(actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.views(tracker.find_by_assigned_user(actor.id)))


@lot_router.post("", status_code=201)
def create_lot(lot: PlantLot, actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.create_lot(lot, actor)))


@lot_router.get("")
def list_lots(page: int = 1, limit: int = 10, zone: Optional[str] = None,
              health_status: Optional[str] = None, species_id: Optional[str] = None,
              include_inactive: bool = False, sort_by: str = "planted_date", sort_order: str = "desc",
              actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    lots, pagination = tracker.list_lots(zone=zone, health_status=health_status, species_id=species_id,
                                         include_inactive=include_inactive, page=page, limit=limit,
                                         sort_by=sort_by, sort_order=sort_order)
    return ok(tracker.views(lots), pagination=pagination)


@lot_router.get("/{lot_id}")
def get_lot(lot_id: str, actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.get(lot_id)))


@lot_router.put("/{lot_id}")
def update_lot(lot_id: str, changes: PlantLotUpdate, actor: Actor = Depends(current_actor),
               tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.update_lot(lot_id, changes, actor)))


@lot_router.post("/{lot_id}/measurements", status_code=201)
def record_measurement(lot_id: str, measurement: GrowthMeasurementIn, actor: Actor = Depends(current_actor),
                       tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.record_growth_measurement(lot_id, measurement, actor)))


@lot_router.post("/{lot_id}/health", status_code=201)
def record_health(lot_id: str, observation: HealthObservationIn, actor: Actor = Depends(current_actor),
                  tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.record_health_observation(lot_id, observation, actor)))


@lot_router.post("/{lot_id}/photos", status_code=201)
def attach_photo(lot_id: str, photo: PhotoIn, actor: Actor = Depends(current_actor),
                 tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.attach_photo(lot_id, photo, actor)))


@lot_router.post("/{lot_id}/harvest")
def harvest_lot(lot_id: str, harvest: HarvestIn, actor: Actor = Depends(current_actor),
                tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.harvest(lot_id, harvest, actor)), "Plant lot harvested")


@lot_router.post("/{lot_id}/deactivate")
def deactivate_lot(lot_id: str, actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    return ok(tracker.view(tracker.deactivate_lot(lot_id, actor)), "Plant lot deactivated")


@lot_router.delete("/{lot_id}")
def delete_lot(lot_id: str, actor: Actor = Depends(current_actor), tracker: LotTracker = Depends(get_tracker)):
    tracker.delete_lot(lot_id, actor)
    return ok(message="Plant lot deleted successfully")


# ---------------- QR Endpoints ----------------
qr_router = APIRouter(prefix="/api/qr", tags=["qr"])


def _png_response(png: bytes, filename: str) -> Response:
    return Response(content=png, media_type="image/png",
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@qr_router.get("/stats")
def qr_stats(actor: Actor = Depends(current_actor), generator: QRGenerator = Depends(get_qr)):
    return ok(generator.stats())


@qr_router.get("/lot/{lot_code}")
def lot_qr(lot_code: str, request: Request, format: str = "base64", size: int = DEFAULT_SIZE,
           actor: Actor = Depends(current_actor), generator: QRGenerator = Depends(get_qr)):
    lot, payload, qr_code = generator.encode_full(lot_code, base_url(request), format, size)
    if format == "png":
        return _png_response(qr_code, f"lot-{lot['lot_id']}-qr.png")
    return ok({"lot_id": lot["lot_id"], "qr_code": qr_code, "format": format,
               "size": size, "lot_info": payload})


@qr_router.get("/lot/{lot_code}/info")
def lot_info_qr(lot_code: str, request: Request, format: str = "base64", size: int = DEFAULT_SIZE,
                actor: Actor = Depends(current_actor), generator: QRGenerator = Depends(get_qr)):
    lot, url, info, qr_code = generator.encode_reference(lot_code, base_url(request), format, size)
    if format == "png":
        return _png_response(qr_code, f"lot-{lot['lot_id']}-info-qr.png")
    return ok({"lot_id": lot["lot_id"], "qr_code": qr_code, "format": format,
               "size": size, "url": url, "lot_info": info})


@qr_router.post("/lots/batch")
def batch_qr(body: BatchQRRequest, request: Request, actor: Actor = Depends(current_actor),
             generator: QRGenerator = Depends(get_qr)):
    return ok(generator.encode_batch(body.lot_ids, base_url(request), body.format, body.size, body.mode))


# ---------------- Error Handlers ----------------
def _field_errors(errors):
    out = []
    for e in errors:
        loc = [str(p) for p in e.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path"):
            loc = loc[1:]
        out.append({"field": ".".join(loc), "message": e.get("msg")})
    return out


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


async def request_validation_handler(request: Request, exc):
    return JSONResponse(status_code=400, content={
        "success": False, "message": "Validation error", "errors": _field_errors(exc.errors())})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)},
                        headers=getattr(exc, "headers", None))


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ---------------- App ----------------
def build_services(app: FastAPI, db: Database):
    species_repo = SpeciesRepository(db)
    lot_repo = LotRepository(db)
    user_repo = UserRepository(db)
    for repo in (species_repo, lot_repo, user_repo):
        repo.ensure_indexes()

    app.state.catalog = SpeciesCatalog(species_repo)
    app.state.tracker = LotTracker(lot_repo, app.state.catalog)
    app.state.qr = QRGenerator(app.state.tracker)
    app.state.users = UserService(user_repo, app.state.settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.db is None:
        app.state.db = connect(app.state.settings)
    build_services(app, app.state.db)
    yield


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Plantation Record Keeper API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = database

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(PydanticValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.get("/")
    def read_root():
        return {"message": "Plantation Record Keeper Backend Running", "version": "1.0.0"}

    @app.get("/api/health")
    def health(request: Request):
        response = {
            "status": "OK",
            "message": "Plantation Record Keeper API is running",
            "timestamp": utcnow(),
            "database": "Disconnected",
            "collections": [],
        }
        db = request.app.state.db
        if db is not None:
            try:
                response["collections"] = db.list_collection_names()[:10]
                response["database"] = "Connected"
            except PyMongoError:
                logger.warning("Database health check failed", exc_info=True)
        return response

    for router in (auth_router, species_router, lot_router, qr_router):
        app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
