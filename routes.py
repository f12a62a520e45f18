from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session
from typing import Dict, List, Optional
import logging

from errors import ConflictError, NotFoundError, PortalError, SourceUnavailableError, ValidationError
from models import DeviceType, Priority, User
from reconciler import CycleInProgressError
from vpn_profile import profile_filename
import devices
import networks
import qos

logger = logging.getLogger(__name__)

api_router = APIRouter()

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    SourceUnavailableError: 503,
}

# Dependency for database session
def get_db_session(request: Request):
    with request.app.state.session_factory() as session:
        yield session

class StrictModel(BaseModel):
    """Request body that rejects unknown fields"""
    model_config = ConfigDict(extra='forbid')

class PolicyCreateRequest(StrictModel):
    name: str
    bandwidth_limit: int
    priority: Priority = Priority.MEDIUM
    description: Optional[str] = None

class PolicyUpdateRequest(StrictModel):
    name: Optional[str] = None
    bandwidth_limit: Optional[int] = None
    priority: Optional[Priority] = None
    description: Optional[str] = None

class UserPolicyRequest(StrictModel):
    policy_id: int

class DevicePolicyRequest(StrictModel):
    policy_id: int
    assigned_by: Optional[int] = None
    note: Optional[str] = None

class NetworkCreateRequest(StrictModel):
    cidr: str
    description: Optional[str] = None

class NetworkUpdateRequest(StrictModel):
    cidr: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None

class PolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    bandwidth_limit: int
    priority: Priority
    description: Optional[str] = None

class AssignedPolicyResponse(BaseModel):
    policy: Optional[PolicyResponse] = None
    source: Optional[str] = None
    assigned_at: Optional[datetime] = None

class DeviceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    device_id: str
    device_type: DeviceType
    last_connected: Optional[datetime] = None
    last_ip: Optional[str] = None
    is_active: bool

class NetworkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    network_cidr: str
    network_ip: str
    subnet_mask: str
    description: Optional[str] = None
    enabled: bool

class ReconcileResponse(BaseModel):
    status: str
    created: int
    updated: int
    deactivated: int
    unknown_users: List[str]
    duration_ms: float

def _assigned(resolved: Optional[qos.EffectivePolicy]) -> AssignedPolicyResponse:
    if resolved is None:
        return AssignedPolicyResponse()
    return AssignedPolicyResponse(
        policy=PolicyResponse.model_validate(resolved.policy),
        source=resolved.source,
        assigned_at=resolved.assigned_at
    )

def _require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user

# QoS policies

@api_router.get("/qos/policies", response_model=List[PolicyResponse])
async def list_policies(db: Session = Depends(get_db_session)):
    return [PolicyResponse.model_validate(p) for p in qos.list_policies(db)]

@api_router.post("/qos/policies", response_model=PolicyResponse, status_code=201)
async def create_policy(body: PolicyCreateRequest, db: Session = Depends(get_db_session)):
    policy = qos.create_policy(
        db,
        name=body.name,
        bandwidth_limit=body.bandwidth_limit,
        priority=body.priority.value,
        description=body.description
    )
    return PolicyResponse.model_validate(policy)

@api_router.get("/qos/policies/{policy_id}", response_model=PolicyResponse)
async def get_policy(policy_id: int, db: Session = Depends(get_db_session)):
    return PolicyResponse.model_validate(qos.get_policy(db, policy_id))

@api_router.put("/qos/policies/{policy_id}", response_model=PolicyResponse)
async def update_policy(policy_id: int, body: PolicyUpdateRequest, db: Session = Depends(get_db_session)):
    policy = qos.update_policy(
        db,
        policy_id,
        name=body.name,
        bandwidth_limit=body.bandwidth_limit,
        priority=body.priority.value if body.priority else None,
        description=body.description
    )
    return PolicyResponse.model_validate(policy)

@api_router.delete("/qos/policies/{policy_id}", status_code=204)
async def delete_policy(policy_id: int, db: Session = Depends(get_db_session)):
    qos.delete_policy(db, policy_id)
    return Response(status_code=204)

@api_router.get("/qos/stats")
async def policy_stats(db: Session = Depends(get_db_session)) -> Dict[str, int]:
    return qos.get_policy_stats(db)

# Policy assignments

@api_router.get("/users/{user_id}/policy", response_model=AssignedPolicyResponse)
async def get_user_policy(user_id: int, db: Session = Depends(get_db_session)):
    _require_user(db, user_id)
    return _assigned(qos.get_user_policy(db, user_id))

@api_router.put("/users/{user_id}/policy", response_model=AssignedPolicyResponse)
async def assign_user_policy(user_id: int, body: UserPolicyRequest, db: Session = Depends(get_db_session)):
    qos.assign_user_policy(db, user_id, body.policy_id)
    return _assigned(qos.get_user_policy(db, user_id))

@api_router.delete("/users/{user_id}/policy", status_code=204)
async def remove_user_policy(user_id: int, db: Session = Depends(get_db_session)):
    if not qos.remove_user_policy(db, user_id):
        raise NotFoundError(f"User {user_id} has no QoS policy")
    return Response(status_code=204)

@api_router.get("/devices/{device_id}/policy", response_model=AssignedPolicyResponse)
async def get_device_policy(device_id: int, db: Session = Depends(get_db_session)):
    """Effective policy for the device and whether it came from the device or its owner"""
    devices.get_device(db, device_id)
    return _assigned(qos.resolve_effective_policy(db, device_id))

@api_router.put("/devices/{device_id}/policy", response_model=AssignedPolicyResponse)
async def assign_device_policy(device_id: int, body: DevicePolicyRequest, db: Session = Depends(get_db_session)):
    qos.assign_device_policy(
        db,
        device_id,
        body.policy_id,
        assigned_by=body.assigned_by,
        note=body.note
    )
    return _assigned(qos.resolve_effective_policy(db, device_id))

@api_router.delete("/devices/{device_id}/policy", status_code=204)
async def remove_device_policy(device_id: int, db: Session = Depends(get_db_session)):
    if not qos.remove_device_policy(db, device_id):
        raise NotFoundError(f"Device {device_id} has no QoS policy")
    return Response(status_code=204)

# Devices

@api_router.get("/devices", response_model=List[DeviceResponse])
async def list_devices(
    user_id: Optional[int] = None,
    active_only: bool = False,
    db: Session = Depends(get_db_session)
):
    return [
        DeviceResponse.model_validate(d)
        for d in devices.list_devices(db, user_id=user_id, active_only=active_only)
    ]

@api_router.get("/devices/{device_id}", response_model=DeviceResponse)
async def get_device(device_id: int, db: Session = Depends(get_db_session)):
    return DeviceResponse.model_validate(devices.get_device(db, device_id))

# LAN networks

@api_router.get("/networks/common")
async def common_networks():
    return networks.COMMON_NETWORKS

@api_router.get("/users/{user_id}/networks", response_model=List[NetworkResponse])
async def list_networks(user_id: int, enabled_only: bool = False, db: Session = Depends(get_db_session)):
    _require_user(db, user_id)
    return [
        NetworkResponse.model_validate(n)
        for n in networks.list_networks(db, user_id, enabled_only=enabled_only)
    ]

@api_router.post("/users/{user_id}/networks", response_model=NetworkResponse, status_code=201)
async def register_network(user_id: int, body: NetworkCreateRequest, db: Session = Depends(get_db_session)):
    network = networks.register_network(db, user_id, body.cidr, body.description)
    return NetworkResponse.model_validate(network)

@api_router.patch("/networks/{network_id}", response_model=NetworkResponse)
async def update_network(network_id: int, body: NetworkUpdateRequest, db: Session = Depends(get_db_session)):
    network = networks.update_network(
        db,
        network_id,
        cidr=body.cidr,
        description=body.description,
        enabled=body.enabled
    )
    return NetworkResponse.model_validate(network)

@api_router.delete("/networks/{network_id}", status_code=204)
async def delete_network(network_id: int, db: Session = Depends(get_db_session)):
    networks.delete_network(db, network_id)
    return Response(status_code=204)

# Profile and reconciliation

@api_router.get("/users/{user_id}/profile")
def download_profile(user_id: int, request: Request, device_id: Optional[int] = None):
    """Render the user's OpenVPN profile as a file download"""
    renderer = request.app.state.renderer
    profile = renderer.render_profile(user_id, device_id=device_id)

    with request.app.state.session_factory() as session:
        filename = profile_filename(_require_user(session, user_id))

    return Response(
        content=profile,
        media_type="application/x-openvpn-profile",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )

@api_router.post("/reconcile", response_model=ReconcileResponse)
def reconcile_now(request: Request):
    """Run one reconciliation cycle immediately"""
    reconciler = request.app.state.reconciler
    if reconciler is None:
        raise NotFoundError("Reconciler is not configured")

    try:
        result = reconciler.run_once()
    except CycleInProgressError as e:
        raise ConflictError(str(e))

    return ReconcileResponse(
        status="ok",
        created=result.created,
        updated=result.updated,
        deactivated=result.deactivated,
        unknown_users=sorted(result.unknown_users),
        duration_ms=result.duration_ms
    )

async def portal_error_handler(request: Request, exc: PortalError):
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    content = {"detail": str(exc)}
    if isinstance(exc, ValidationError) and exc.field:
        content["field"] = exc.field
    return JSONResponse(status_code=status_code, content=content)

def create_app(config, session_factory, reconciler=None, renderer=None, start_reconciler: bool = False):
    """
    Create FastAPI application.

    Args:
        config: Application configuration
        session_factory: SQLAlchemy session factory
        reconciler: Reconciler exposed through /reconcile
        renderer: ProfileRenderer used for profile downloads
        start_reconciler: Run the reconciler in the background for the app's lifetime

    Returns:
        FastAPI app instance
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_reconciler and reconciler is not None:
            reconciler.start()
        try:
            yield
        finally:
            if start_reconciler and reconciler is not None:
                await reconciler.stop()

    app = FastAPI(title="ovpn-portal", lifespan=lifespan)
    app.state.config = config
    app.state.session_factory = session_factory
    app.state.reconciler = reconciler
    app.state.renderer = renderer

    app.add_exception_handler(PortalError, portal_error_handler)
    app.include_router(api_router)

    return app
