from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from cdss import config

logger = logging.getLogger(__name__)

_RULES_DIR = config.RULES_DIR

BODY_REGIONS: List[Dict[str, str]] = [
    {"id": "ankle", "name": "Ankle"},
    {"id": "lumbar", "name": "Lower Back (Lumbar)"},
    {"id": "cervical", "name": "Neck (Cervical)"},
    {"id": "shoulder", "name": "Shoulder"},
    {"id": "elbow", "name": "Elbow"},
    {"id": "knee", "name": "Knee"},
]


def configure(*, rules_dir: str) -> None:
    global _RULES_DIR
    _RULES_DIR = rules_dir or _RULES_DIR


def region_title(region: str) -> str:
    region = (region or "").strip()
    return f"{region[:1].upper()}{region[1:].lower()} Region" if region else ""


def load_region_rules(region: str) -> Optional[Dict[str, Any]]:
    title = region_title(region)
    if not title:
        return None
    path = os.path.join(_RULES_DIR, f"{title}.json")
    if not os.path.exists(path):
        logger.warning("rules not found for region=%s path=%s", region, path)
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def rules_to_module_questions(rules: Dict[str, Any]) -> List[Dict[str, Any]]:
    questions: List[Dict[str, Any]] = []
    for condition in rules.get("conditions") or []:
        for q in condition.get("questions") or []:
            item = dict(q)
            item["conditionName"] = condition.get("name")
            questions.append(item)
    return questions


def module_to_rules(module: Any, fallback: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Group a flat module question list into the conditions shape the engines read."""
    region = str(getattr(module, "region", "") or "General")
    title = str(getattr(module, "title", "") or region_title(region))
    fallback_conditions = {
        c.get("name"): c for c in ((fallback or {}).get("conditions") or []) if isinstance(c, dict)
    }
    conditions: List[Dict[str, Any]] = []
    index: Dict[str, Dict[str, Any]] = {}
    for q in getattr(module, "questions", None) or []:
        if not isinstance(q, dict) or not q.get("id"):
            continue
        name = str(q.get("conditionName") or title)
        if name not in index:
            base = fallback_conditions.get(name) or {}
            index[name] = {
                "name": name,
                "questions": [],
                "recommended_tests": list(base.get("recommended_tests") or []),
                "observations": list(base.get("observations") or []),
            }
            conditions.append(index[name])
        question = {k: v for k, v in q.items() if k != "conditionName"}
        index[name]["questions"].append(question)
    return {"region": region.lower(), "title": title, "conditions": conditions}


def rules_for_region(store: Any, region: str) -> Optional[Dict[str, Any]]:
    bundled = load_region_rules(region)
    try:
        modules = store.list_modules(region=region, status="Active") if store is not None else []
    except RuntimeError:
        logger.exception("failed to read diagnostic modules for region=%s", region)
        modules = []
    # Admin-edited modules win over the bundled default
    modules = sorted(modules, key=lambda m: (m.is_default, -(m.version or 1)))
    for module in modules:
        rules = module_to_rules(module, fallback=bundled)
        if rules["conditions"]:
            return rules
    return bundled
