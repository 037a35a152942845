"""Condition (diagnosis) catalog endpoints."""

from fastapi import APIRouter, Depends

from therabot.models import Condition
from therabot.storage import Storage

from .deps import get_identity, get_storage, require_admin
from .models import CreateCondition

router = APIRouter()


@router.get("/conditions", dependencies=[Depends(get_identity)])
async def list_conditions(storage: Storage = Depends(get_storage)):
    """List the diagnoses a trainee can submit."""
    return storage.list_conditions()


@router.post("/conditions", status_code=201, dependencies=[Depends(require_admin)])
async def create_condition(body: CreateCondition, storage: Storage = Depends(get_storage)):
    """Add a condition to the catalog."""
    return storage.put_condition(Condition(name=body.name, description=body.description))
