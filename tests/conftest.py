"""Shared content-tree builder for the gate tests.

``content`` yields a ContentBuilder rooted in tmp_path. ``build_valid()``
writes a small workspace that passes the gate with zero findings:

  catalog.json                 sections: context (paged, 3 packs), drills
  context/index.json           page 1, 2 items, nextPage -> pages/2.json
  context/pages/2.json         page 2, 1 item, nextPage null
  drills/index.json            1 drill
  packs/<id>/pack.json         doctor_001, doctor_002, doctor_003
  drills/<id>/drill.json       verbs_001

``add_mechanics()`` and ``use_shaped_drills()`` switch on the two unpaged
section listings on top of that.
"""

import copy
import json
from pathlib import Path

import pytest

from content_gate.analytics import compute_pack_analytics, scenario_dictionaries

WS = "de"

PROMPT_SETS = {
    "doctor_001": [
        {"id": "p1", "text": "Ich habe morgen einen Termin beim Arzt.", "slotsChanged": ["subject", "time"]},
        {"id": "p2", "text": "Haben Sie heute noch einen freien Termin?", "slotsChanged": ["time"]},
        {"id": "p3", "text": "Mein Rezept ist leider abgelaufen.", "slotsChanged": ["object", "modal"]},
        {"id": "p4", "text": "Die Untersuchung dauert ungefähr eine halbe Stunde.", "slotsChanged": []},
    ],
    "doctor_002": [
        {"id": "p1", "text": "Wo ist die Klinik am Bahnhof?", "slotsChanged": ["location"]},
        {"id": "p2", "text": "Brauche ich eine Überweisung für die Behandlung?", "slotsChanged": ["object", "modal"]},
        {"id": "p3", "text": "Können Sie mir die Diagnose bitte erklären?", "slotsChanged": []},
    ],
    "doctor_003": [
        {"id": "p1", "text": "Seit drei Tagen habe ich starke Kopfschmerzen.", "slotsChanged": ["time", "symptom"]},
        {"id": "p2", "text": "Nehmen Sie diese Medizin zweimal täglich.", "slotsChanged": ["frequency"]},
        {"id": "p3", "text": "Muss der Patient morgen nüchtern sein?", "slotsChanged": ["subject", "time"]},
        {"id": "p4", "text": "Gute Besserung und bis nächste Woche!", "slotsChanged": []},
    ],
}

TITLES = {
    "doctor_001": "Einen Termin vereinbaren",
    "doctor_002": "In der Klinik",
    "doctor_003": "Beschwerden beschreiben",
}


def write_json(path: Path, obj):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")


def url(rel: str, ws: str = WS) -> str:
    return f"/v1/workspaces/{ws}/{rel}"


def make_pack(pack_id: str, prompts=None, title=None, ws: str = WS) -> dict:
    """A schema-valid pack whose analytics block matches its prompts."""
    pack = {
        "schemaVersion": 1,
        "id": pack_id,
        "kind": "pack",
        "packVersion": "1.0.0",
        "title": title or TITLES.get(pack_id, pack_id.replace("_", " ").title()),
        "level": "A2",
        "estimatedMinutes": 15,
        "description": "Beim Arzt einen Termin machen und Beschwerden schildern.",
        "outline": ["Begrüßung", "Termin", "Abschluss"],
        "sessionPlan": {"version": 1, "steps": [{"id": "s1", "promptIds": ["p1", "p2"]}]},
        "scenario": "doctor",
        "register": "formal",
        "primaryStructure": "modal_verbs_requests",
        "variationSlots": ["subject", "time", "object"],
        "prompts": copy.deepcopy(prompts if prompts is not None else PROMPT_SETS[pack_id]),
        "provenance": {"source": "template"},
    }
    computed = compute_pack_analytics(pack, scenario_dictionaries())
    pack["analytics"] = {
        **computed,
        "intendedOutcome": "Learner can book and reschedule a doctor's appointment.",
        "goal": "Book a doctor's appointment by phone",
        "successDefinition": "Completes the booking dialogue without prompts",
        "targetLatencyMs": 1200,
    }
    return pack


def make_item(pack: dict, ws: str = WS) -> dict:
    return {
        "id": pack["id"],
        "kind": "pack",
        "title": pack["title"],
        "level": pack["level"],
        "scenario": pack["scenario"],
        "entryUrl": url(f"packs/{pack['id']}/pack.json", ws),
        "analyticsSummary": {
            "primaryStructure": pack["primaryStructure"],
            "variationSlots": list(pack["variationSlots"]),
            "cognitiveLoad": pack["analytics"]["estimatedCognitiveLoad"],
        },
    }


class ContentBuilder:
    def __init__(self, content_root: Path, ws: str = WS):
        self.content_root = content_root
        self.ws = ws
        self.root = content_root / "v1" / "workspaces" / ws

    def url(self, rel: str) -> str:
        return url(rel, self.ws)

    def path(self, rel: str) -> Path:
        return self.root / rel

    def write(self, rel: str, obj):
        write_json(self.path(rel), obj)

    def read(self, rel: str):
        return json.loads(self.path(rel).read_text(encoding="utf-8"))

    def update(self, rel: str, fn):
        doc = self.read(rel)
        fn(doc)
        self.write(rel, doc)

    def build_valid(self) -> Path:
        packs = [make_pack(pid, ws=self.ws) for pid in ("doctor_001", "doctor_002", "doctor_003")]
        for pack in packs:
            self.write(f"packs/{pack['id']}/pack.json", pack)
        items = [make_item(p, self.ws) for p in packs]

        self.write("catalog.json", {
            "schemaVersion": 1,
            "version": "v1",
            "workspace": self.ws,
            "languageCode": "de",
            "languageName": "German",
            "sections": [
                {"id": "context", "kind": "context", "title": "Kontext", "itemsUrl": self.url("context/index.json")},
                {"id": "drills", "kind": "drills", "title": "Drills", "itemsUrl": self.url("drills/index.json")},
            ],
        })
        self.write("context/index.json", {
            "schemaVersion": 1, "version": "v1", "kind": "context",
            "pageSize": 2, "page": 1, "total": 3,
            "items": items[:2],
            "groups": [{"id": "g1", "title": "Termine", "kind": "context_group",
                        "itemIds": ["doctor_001", "doctor_003"]}],
            "nextPage": self.url("context/pages/2.json"),
        })
        self.write("context/pages/2.json", {
            "schemaVersion": 1, "version": "v1", "kind": "context",
            "pageSize": 2, "page": 2, "total": 3,
            "items": items[2:],
            "nextPage": None,
        })

        drill = {
            "schemaVersion": 1,
            "id": "verbs_001",
            "kind": "drill",
            "title": "Modalverben im Präsens",
            "level": "A2",
            "estimatedMinutes": 8,
            "exercises": [
                {"id": "e1", "prompt": "Ich ___ heute nicht kommen. (können)"},
                {"id": "e2", "prompt": "___ du mir bitte helfen? (können)"},
                {"id": "e3", "prompt": "Wir ___ morgen früh aufstehen. (müssen)"},
            ],
        }
        self.write("drills/verbs_001/drill.json", drill)
        self.write("drills/index.json", {
            "schemaVersion": 1, "version": "v1", "kind": "drills",
            "pageSize": 20, "page": 1,
            "items": [{"id": "verbs_001", "kind": "drill", "title": drill["title"], "level": "A2",
                       "entryUrl": self.url("drills/verbs_001/drill.json")}],
            "nextPage": None,
        })
        return self.root

    def add_mechanics(self):
        """Mechanics section: an unpaged listing plus one per-mechanic drill index."""
        self.write("mechanics/index.json", {
            "schemaVersion": 1, "version": "v1", "kind": "mechanics_index", "total": 1,
            "mechanics": [{"id": "modal_verbs", "title": "Modalverben", "order": 1,
                           "itemsUrl": self.url("mechanics/modal_verbs/index.json")}],
        })
        self.write("mechanics/modal_verbs/index.json", {
            "schemaVersion": 1, "version": "v1", "kind": "mechanic_drills", "mechanicId": "modal_verbs",
            "title": "Modalverben", "total": 1, "pageSize": 20, "page": 1,
            "items": [{"id": "verbs_001", "kind": "drill", "title": "Modalverben im Präsens", "level": "A2",
                       "entryUrl": self.url("drills/verbs_001/drill.json")}],
            "nextPage": None,
        })
        self.update("catalog.json", lambda d: d["sections"].append(
            {"id": "mechanics", "kind": "mechanics", "title": "Mechanik",
             "itemsUrl": self.url("mechanics/index.json")}))

    def use_shaped_drills(self):
        """Replace the paged drills index with the drillGroups/tiers listing."""
        self.write("drills/index.json", {
            "schemaVersion": 1,
            "drillGroups": [{
                "id": "modal_verbs", "kind": "drill_group", "title": "Modalverben",
                "description": "Können, müssen und dürfen im Präsens.",
                "tiers": [{"id": "modal_verbs_a2_t1", "tier": 1, "level": "A2", "durationMinutes": 8,
                           "status": "available", "entryUrl": self.url("drills/verbs_001/drill.json")}],
            }],
        })


@pytest.fixture
def content(tmp_path):
    return ContentBuilder(tmp_path / "content")


@pytest.fixture
def valid_ws(content):
    return content.build_valid()
