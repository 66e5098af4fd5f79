"""
Narrow collaborator interfaces consumed by the engine, plus the default
implementations: an LLM-backed generation provider and a MongoDB donor
directory.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from campaign_engine.content import normalize_structured_content
from campaign_engine.llm import LLMClient
from database import get_db

logger = logging.getLogger("campaigns.providers")


@dataclass
class GeneratedContent:
    subject: str
    structured_content: List[Dict]
    reference_contexts: Dict[str, str] = field(default_factory=dict)


def format_donor_name(donor: Dict) -> str:
    if donor.get("display_name"):
        return donor["display_name"]
    name = f"{donor.get('first_name') or ''} {donor.get('last_name') or ''}".strip()
    return name or donor.get("email", "")


# =============================================================================
# DONOR DIRECTORY
# =============================================================================

class DonorDirectory:
    """Read-only donor lookup, scoped to an organization."""

    def get_donors_by_ids(self, donor_ids: List[Any], organization_id: str) -> List[Dict]:
        raise NotImplementedError


class MongoDonorDirectory(DonorDirectory):
    def __init__(self, collection_name: str = "donors"):
        self.collection_name = collection_name

    def get_donors_by_ids(self, donor_ids: List[Any], organization_id: str) -> List[Dict]:
        cursor = get_db()[self.collection_name].find(
            {"organization_id": organization_id, "donor_id": {"$in": list(donor_ids)}},
            {"_id": 0},
        )
        return list(cursor)


# =============================================================================
# GENERATION PROVIDER
# =============================================================================

class GenerationProvider:
    """Produces one email for one donor. Raise on failure."""

    async def generate(self, prompt: str, donor_context: Dict) -> GeneratedContent:
        raise NotImplementedError

    async def refine(self, existing: Dict, instruction: str, donor_context: Dict) -> GeneratedContent:
        raise NotImplementedError


GENERATION_SYSTEM_PROMPT = """You write personalized emails from a nonprofit organization to one of its donors.

Return JSON with this shape:
{
  "subject": "short subject line",
  "structured_content": [
    {"piece": "one sentence or paragraph", "references": ["ids of donor facts used"], "add_newline_after": true}
  ]
}

Only reference facts present in the donor context. Keep the tone warm and specific."""


class LLMGenerationProvider(GenerationProvider):
    def __init__(self, llm: Optional[LLMClient] = None, organization_name: str = "",
                 writing_instructions: str = ""):
        self.llm = llm or LLMClient()
        self.organization_name = organization_name
        self.writing_instructions = writing_instructions

    def _context_block(self, donor_context: Dict) -> str:
        donor = {k: v for k, v in donor_context.items() if k not in ("organization_id",)}
        lines = [f"ORGANIZATION: {self.organization_name}"]
        if self.writing_instructions:
            lines.append(f"WRITING GUIDELINES: {self.writing_instructions}")
        lines.append(f"DONOR: {format_donor_name(donor_context)}")
        lines.append("DONOR CONTEXT (JSON):")
        lines.append(json.dumps(donor, default=str, indent=2))
        return "\n".join(lines)

    def _parse(self, result: Dict) -> GeneratedContent:
        subject = (result.get("subject") or "").strip()
        pieces = normalize_structured_content(result.get("structured_content"))
        if not subject or not pieces:
            raise ValueError("model returned an email without subject or content")
        return GeneratedContent(
            subject=subject,
            structured_content=pieces,
            reference_contexts=result.get("reference_contexts") or {},
        )

    async def generate(self, prompt: str, donor_context: Dict) -> GeneratedContent:
        user_prompt = f"{self._context_block(donor_context)}\n\nINSTRUCTION:\n{prompt}"
        result = await self.llm.complete_json_async(GENERATION_SYSTEM_PROMPT, user_prompt, temperature=0.7)
        return self._parse(result)

    async def refine(self, existing: Dict, instruction: str, donor_context: Dict) -> GeneratedContent:
        current = {
            "subject": existing.get("subject", ""),
            "structured_content": existing.get("structured_content", []),
        }
        user_prompt = (
            f"{self._context_block(donor_context)}\n\n"
            f"CURRENT EMAIL (JSON):\n{json.dumps(current, indent=2)}\n\n"
            f"Rewrite the email applying this instruction, keep everything else intact:\n{instruction}"
        )
        result = await self.llm.complete_json_async(GENERATION_SYSTEM_PROMPT, user_prompt, temperature=0.5)
        return self._parse(result)
