"""
Evidex Rules API Routes
"""

import logging

from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def list_rules(request: Request):
    """List the loaded pattern rules."""
    engine = request.app.state.services.rule_engine
    return {
        "rules": [
            {
                "id": rule.rule_id,
                "title": rule.title,
                "severity": rule.severity,
                "confidence": rule.confidence,
                "threshold": rule.threshold,
                "techniques": list(rule.techniques),
            }
            for rule in engine.rules
        ],
        "total": engine.rule_count,
    }


@router.post("/reload")
async def reload_rules(request: Request):
    """Reload rules from disk. Running analyses keep the rules they started with."""
    engine = request.app.state.services.rule_engine
    count = engine.reload()
    logger.info(f"Reloaded {count} rules")
    return {"success": True, "rules_loaded": count}
