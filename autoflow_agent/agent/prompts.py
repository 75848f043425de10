"""Prompt composition for the IR producer.

The producer sees one fixed system prompt plus a bounded slice of the catalog.
Repair, modify and explain requests are plain user messages built here so the
pipeline never assembles prompt text inline.
"""

from __future__ import annotations

import json
from typing import Any

from autoflow_agent.knowledge.catalog import COMPACT_LIMIT, Catalog

# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

_FLOW_ARCHITECT = """\
You are a flow architect. You turn a user's request (any language) into a
single Activepieces automation, expressed as JSON.

RULES:
1. Every flow has exactly one trigger.
2. actions is an ordered array with at least one element.
3. Use only pieces listed in PIECES_CATALOG.
4. Time, schedule or "every day" wording -> trigger type "SCHEDULE".
5. "When X arrives / happens" -> trigger type "PIECE_TRIGGER" or "WEBHOOK".
6. "If / otherwise" wording -> action type "BRANCH".
7. Return JSON only. No prose, no markdown fences.

TRIGGER TYPES:
- SCHEDULE       cron schedule; input.cronExpression (5 fields), input.timezone
- PIECE_TRIGGER  an event emitted by a piece; needs pieceName + triggerName
- WEBHOOK        an inbound HTTP request

ACTION TYPES:
- PIECE   call a piece operation; needs pieceName + actionName
- CODE    custom JavaScript; put the source in "code"
- BRANCH  conditional; needs a non-empty "conditions" plus
          "onSuccessActions" and "onFailureActions" arrays

SCHEDULE EXAMPLES:
- every day at 08:00   "0 8 * * *"
- every hour           "0 * * * *"
- every Monday         "0 8 * * 1"
Never schedule more often than every 5 minutes.

JSON SHAPE:
{
  "displayName": "Clear name",
  "trigger": {
    "type": "SCHEDULE | PIECE_TRIGGER | WEBHOOK",
    "pieceName": "@activepieces/piece-xxx",
    "triggerName": "trigger-name",
    "displayName": "What starts the flow",
    "input": {}
  },
  "actions": [
    {
      "type": "PIECE",
      "pieceName": "@activepieces/piece-xxx",
      "actionName": "action-name",
      "displayName": "What this step does",
      "input": {}
    }
  ],
  "connections_needed": [],
  "explanation": "Two-line explanation for the user"
}

If the request cannot be automated, return {"error": "<reason>"} and nothing else.
Reference earlier data as {{trigger.field}} or {{step_1.field}}.
"""

EXPLAIN_SYSTEM = "You explain automation workflows to non-technical users, briefly."


def build_system_prompt(catalog: Catalog, limit: int = COMPACT_LIMIT) -> str:
    """System prompt plus at most `limit` compact catalog entries."""
    compact = catalog.list_compact(limit)
    return (
        _FLOW_ARCHITECT
        + f"\n## PIECES_CATALOG ({len(catalog)} total, showing {len(compact)}):\n"
        + json.dumps(compact, indent=2, ensure_ascii=False)
    )


# ---------------------------------------------------------------------------
# User-turn templates
# ---------------------------------------------------------------------------


def build_repair_message(request: str, failed: Any, errors: list[str]) -> str:
    """One repair request: numbered errors, the failed candidate, the original ask."""
    numbered = "\n".join(f"{i}. {e}" for i, e in enumerate(errors, start=1))
    return (
        "Fix the following errors in the JSON and return corrected JSON only.\n\n"
        f"ERRORS:\n{numbered}\n\n"
        f"PREVIOUS JSON:\n{json.dumps(failed, indent=2, ensure_ascii=False, default=str)}\n\n"
        f"REQUEST: {request}"
    )


def build_modify_message(flow: dict[str, Any], instruction: str) -> str:
    return (
        "Modify the following flow according to the request.\n\n"
        f"## CURRENT FLOW:\n{json.dumps(flow, indent=2, ensure_ascii=False)}\n\n"
        f"## REQUESTED CHANGE:\n{instruction}\n\n"
        "Return the complete modified flow as JSON."
    )


def build_explain_message(flow: dict[str, Any]) -> str:
    return f"Explain this flow in three short lines:\n{json.dumps(flow, ensure_ascii=False)}"
