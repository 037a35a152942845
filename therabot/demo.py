"""Create demo conditions and a published scenario for development/testing."""

import logging

from therabot.authoring import Authoring
from therabot.models import Condition, GraphImport, Scenario
from therabot.storage import Storage

logger = logging.getLogger(__name__)

DEMO_CONDITIONS = [
    {"name": "Generalized Anxiety Disorder",
     "description": "Excessive, hard-to-control worry on most days for at least six months."},
    {"name": "Major Depressive Disorder",
     "description": "Persistent low mood or loss of interest with changes in sleep, appetite or energy."},
    {"name": "Insomnia Disorder",
     "description": "Difficulty initiating or maintaining sleep despite adequate opportunity."},
]

# Rapport goes up with open questions; a closed, leading question lowers it.
# The patient only discloses the core symptom when rapport is high enough.
DEMO_NODES = [
    {"ref": "start", "kind": "root",
     "text": "Hi... I'm not really sure why I'm here. My GP said I should talk to someone.",
     "choices": [
         {"label": "What has been on your mind lately?", "target_ref": "open"},
         {"label": "So you're feeling depressed?", "target_ref": "leading"},
     ]},
    {"ref": "open", "kind": "state_update",
     "metadata": {"variable": "rapport", "operator": "add", "value": 2},
     "choices": [{"label": "next", "target_ref": "note-open"}]},
    {"ref": "note-open", "kind": "observation",
     "text": "Open question: patient relaxes posture.",
     "choices": [{"label": "next", "target_ref": "work"}]},
    {"ref": "leading", "kind": "state_update",
     "metadata": {"variable": "rapport", "operator": "sub", "value": 1},
     "choices": [{"label": "next", "target_ref": "work"}]},
    {"ref": "work", "kind": "dialogue",
     "text": "Work, mostly. And everything else, really. I keep running through what could go wrong.",
     "choices": [
         {"label": "How long has it been like this?", "target_ref": "duration"},
         {"label": "Have you tried just not thinking about it?", "target_ref": "dismissive"},
     ]},
    {"ref": "dismissive", "kind": "state_update",
     "metadata": {"variable": "rapport", "operator": "sub", "value": 2},
     "choices": [{"label": "next", "target_ref": "duration"}]},
    {"ref": "duration", "kind": "logic",
     "metadata": {"variable": "rapport", "operator": ">=", "value": 2},
     "choices": [
         {"label": "true", "target_ref": "disclose"},
         {"label": "false", "target_ref": "guarded"},
     ]},
    {"ref": "disclose", "kind": "random",
     "choices": [
         {"label": "sleep", "target_ref": "disclose-sleep", "weight": 60},
         {"label": "body", "target_ref": "disclose-body", "weight": 40},
     ]},
    {"ref": "disclose-sleep", "kind": "dialogue",
     "text": "Over a year now. I lie awake worrying about everything, not just one thing. I can't switch it off.",
     "choices": [{"label": "Thank you for telling me. Let's talk about what might help.", "target_ref": "end"}]},
    {"ref": "disclose-body", "kind": "dialogue",
     "text": "Since last spring. My shoulders are always tense and I get tired so easily. The worry just doesn't stop.",
     "choices": [{"label": "Thank you for telling me. Let's talk about what might help.", "target_ref": "end"}]},
    {"ref": "guarded", "kind": "dialogue",
     "text": "I don't know. A while. It's fine, I'm probably overreacting.",
     "choices": [{"label": "It sounds like it has been hard. We can take it slowly.", "target_ref": "end"}]},
    {"ref": "end", "kind": "end",
     "text": "Okay. Thanks for listening."},
]


def create_demo_data(storage: Storage) -> Scenario | None:
    """Seed conditions and the demo scenario. Skips if conditions already exist."""
    if storage.list_conditions():
        logger.info("Storage already seeded with demo data")
        return None

    conditions = [storage.put_condition(Condition(**c)) for c in DEMO_CONDITIONS]
    authoring = Authoring(storage)
    scenario = authoring.import_graph(GraphImport(
        name="Persistent Worry",
        description="A patient referred by their GP describes constant worry about work and daily life.",
        correct_outcome=conditions[0].id,
        initial_state={"rapport": 0},
        nodes=DEMO_NODES,
    ))
    report = authoring.publish(scenario.id)
    if not report.ok:
        raise RuntimeError(f"Demo scenario failed validation: {report.issues}")
    logger.info("Seeded demo scenario %s", scenario.id)
    return authoring.get_scenario(scenario.id)
