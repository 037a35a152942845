"""Scenario CRUD, graph authoring and publish endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from therabot.authoring import Authoring
from therabot.errors import NotFound
from therabot.models import GraphImport

from .deps import Identity, get_authoring, get_identity, require_admin
from .models import (
    CreateNode,
    CreateScenario,
    ReplaceNode,
    SetChoices,
    UpdateNode,
    UpdateScenario,
)

router = APIRouter()


@router.get("/scenarios")
async def list_scenarios(
    identity: Identity = Depends(get_identity),
    authoring: Authoring = Depends(get_authoring),
):
    """List scenarios. Trainees only see published ones."""
    return authoring.list_scenarios(published_only=not identity.is_admin)


@router.get("/scenarios/{scenario_id}")
async def get_scenario(
    scenario_id: str,
    identity: Identity = Depends(get_identity),
    authoring: Authoring = Depends(get_authoring),
):
    """Get scenario metadata."""
    scenario = authoring.get_scenario(scenario_id)
    if not scenario.published and not identity.is_admin:
        raise NotFound(f"Scenario {scenario_id!r} not found")
    return scenario


@router.post("/scenarios", status_code=201, dependencies=[Depends(require_admin)])
async def create_scenario(body: CreateScenario, authoring: Authoring = Depends(get_authoring)):
    """Create an empty scenario."""
    return authoring.create_scenario(
        body.name, body.description, body.initial_state, body.correct_outcome
    )


@router.post("/scenarios/import", status_code=201, dependencies=[Depends(require_admin)])
async def import_scenario(body: GraphImport, authoring: Authoring = Depends(get_authoring)):
    """Create a scenario with its whole graph from client-side node refs."""
    return authoring.import_graph(body)


@router.patch("/scenarios/{scenario_id}", dependencies=[Depends(require_admin)])
async def update_scenario(
    scenario_id: str, body: UpdateScenario, authoring: Authoring = Depends(get_authoring)
):
    """Update name, description, initial state or correct outcome."""
    return authoring.update_scenario(scenario_id, body.model_dump(exclude_none=True))


@router.delete("/scenarios/{scenario_id}", dependencies=[Depends(require_admin)])
async def delete_scenario(scenario_id: str, authoring: Authoring = Depends(get_authoring)):
    """Delete a scenario and its graph."""
    authoring.delete_scenario(scenario_id)
    return {"ok": True}


@router.get("/scenarios/{scenario_id}/graph", dependencies=[Depends(require_admin)])
async def export_graph(scenario_id: str, authoring: Authoring = Depends(get_authoring)):
    """Scenario metadata plus every node and edge."""
    return authoring.export_graph(scenario_id)


@router.put("/scenarios/{scenario_id}/graph", dependencies=[Depends(require_admin)])
async def replace_graph(
    scenario_id: str, body: GraphImport, authoring: Authoring = Depends(get_authoring)
):
    """Replace a scenario's whole graph (unpublishes it)."""
    return authoring.import_graph(body, scenario_id=scenario_id)


@router.post("/scenarios/{scenario_id}/nodes", status_code=201, dependencies=[Depends(require_admin)])
async def create_node(
    scenario_id: str, body: CreateNode, authoring: Authoring = Depends(get_authoring)
):
    """Add a node to the scenario graph."""
    return authoring.create_node(
        scenario_id, body.kind, body.text, body.metadata, body.x, body.y
    )


@router.patch("/scenarios/{scenario_id}/nodes/{node_id}", dependencies=[Depends(require_admin)])
async def update_node(
    scenario_id: str, node_id: str, body: UpdateNode, authoring: Authoring = Depends(get_authoring)
):
    """Edit a node's text, metadata or position."""
    return authoring.update_node(scenario_id, node_id, body.text, body.metadata, body.x, body.y)


@router.delete("/scenarios/{scenario_id}/nodes/{node_id}", dependencies=[Depends(require_admin)])
async def delete_node(scenario_id: str, node_id: str, authoring: Authoring = Depends(get_authoring)):
    """Delete a node and its outgoing edges. The root must be replaced first."""
    authoring.delete_node(scenario_id, node_id)
    return {"ok": True}


@router.put("/scenarios/{scenario_id}/nodes/{node_id}/choices", dependencies=[Depends(require_admin)])
async def set_choices(
    scenario_id: str, node_id: str, body: SetChoices, authoring: Authoring = Depends(get_authoring)
):
    """Replace all outgoing edges of a node."""
    return authoring.set_choices(scenario_id, node_id, body.choices)


@router.post("/scenarios/{scenario_id}/nodes/{node_id}/replace", dependencies=[Depends(require_admin)])
async def replace_node(
    scenario_id: str, node_id: str, body: ReplaceNode, authoring: Authoring = Depends(get_authoring)
):
    """Repoint every edge into this node (and the root pointer) to another node."""
    if body.new_node_id == node_id:
        raise HTTPException(400, "A node cannot replace itself")
    return authoring.replace_node(scenario_id, node_id, body.new_node_id)


@router.post("/scenarios/{scenario_id}/publish", dependencies=[Depends(require_admin)])
async def publish(scenario_id: str, authoring: Authoring = Depends(get_authoring)):
    """Validate the whole graph; mark the scenario live if it passes."""
    report = authoring.publish(scenario_id)
    if not report.ok:
        return JSONResponse(status_code=422, content=report.model_dump())
    return report
