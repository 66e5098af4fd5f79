"""
Agentic Conversation Engine: clarifies a campaign instruction before any
bulk generation runs.

    collecting ──> confirming ──> generating ──> complete
        ^   │
        └───┘  (more questions)

The planner (an LLM) looks at the instruction, a small donor sample and
the conversation so far, and decides whether to ask another question,
raise a best-practice concern, or confirm a refined prompt.

Flows are persisted with a version number. A turn first claims the flow
(version check + turn_pending flag), then talks to the planner, then
writes the result against the claimed version. A second turn arriving
while one is in flight fails with ConcurrentModificationError instead of
waiting on a lock.
"""

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import config
from campaign_engine.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    ValidationError,
    ensure_owned,
)
from campaign_engine.events import ChangeNotifier, EventKind
from campaign_engine.llm import LLMClient
from campaign_engine.providers import DonorDirectory, format_donor_name
from database import AgenticFlowRecord, utcnow

logger = logging.getLogger("campaigns.agentic_flow")


class FlowState:
    COLLECTING = "collecting"
    CONFIRMING = "confirming"
    GENERATING = "generating"
    COMPLETE = "complete"

    OPEN = (COLLECTING, CONFIRMING)


class StepType:
    QUESTION = "question"
    CONFIRMATION = "confirmation"
    GENERATION = "generation"
    COMPLETE = "complete"


COMPLEXITIES = ("low", "medium", "high")
DONOR_SAMPLE_SIZE = 3


# =============================================================================
# PLANNER
# =============================================================================

ORCHESTRATOR_SYSTEM_PROMPT = """You are an expert email campaign planner for nonprofit organizations.

Analyze the user's request for a bulk donor email and decide whether it can go to generation as is.
Consider:
- Is the instruction clear and specific enough?
- Does it conflict with nonprofit email best practices (pressure tactics, misleading urgency, unclear ask)?
- Is there enough context to write effective personalized emails?

If you need clarification, ask specific, actionable questions.
If you find best practice issues, explain them and suggest alternatives.

Return JSON:
{
  "needs_clarification": bool,
  "questions": ["..."],
  "conflicts_with_best_practices": bool,
  "best_practice_issues": ["..."],
  "suggested_prompt": "improved instruction for email generation",
  "reasoning": "what you concluded, addressed to the user",
  "can_proceed": bool
}"""

FINAL_PROMPT_SYSTEM_PROMPT = """You write the final prompt for a bulk donor email generation run, based on a
conversation with the user.

Synthesize everything agreed in the conversation into one clear, complete instruction that an email
generator can follow for every donor without further questions.

Return JSON:
{
  "final_prompt": "...",
  "summary": "one paragraph describing what will be generated",
  "estimated_complexity": "low" | "medium" | "high"
}"""


def donor_analysis(context: Dict) -> str:
    sample = context.get("donor_sample") or []
    lines = [f"DONORS: {context.get('donor_count', len(sample))} selected"]
    if sample:
        lines.append(f"SAMPLE ({len(sample)}):")
        for donor in sample:
            lines.append(f"- {json.dumps(donor, default=str)}")
    return "\n".join(lines)


def conversation_transcript(conversation: List[Dict]) -> str:
    return "\n".join(
        f"Step {i + 1} ({turn['role']}): {turn['content']}" for i, turn in enumerate(conversation)
    )


class FlowPlanner:
    """Decides the next step of a flow and writes the final prompt."""

    async def plan(self, context: Dict, conversation: List[Dict]) -> Dict:
        raise NotImplementedError

    async def finalize(self, context: Dict, conversation: List[Dict]) -> Dict:
        raise NotImplementedError


class LLMFlowPlanner(FlowPlanner):
    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm or LLMClient()

    def _context_block(self, context: Dict) -> str:
        lines = [
            f'USER INSTRUCTION: "{context["instruction"]}"',
            f"ORGANIZATION: {context.get('organization_name') or 'unknown'}",
        ]
        if context.get("writing_instructions"):
            lines.append(f"WRITING GUIDELINES: {context['writing_instructions']}")
        lines.append(f"CURRENT DATE: {context.get('current_date')}")
        lines.append("")
        lines.append(donor_analysis(context))
        return "\n".join(lines)

    async def plan(self, context: Dict, conversation: List[Dict]) -> Dict:
        if len(conversation) <= 1:
            ask = (
                "Analyze this request. Does the instruction need clarification? Does it conflict with "
                "best practices? Can we proceed, and what would an improved instruction be?"
            )
        else:
            ask = (
                "CONVERSATION SO FAR:\n"
                f"{conversation_transcript(conversation)}\n\n"
                "Based on the user's latest response: have their concerns been addressed, is there enough "
                "clarity to proceed, and are any best practice conflicts left? If ready, give the refined "
                "instruction as suggested_prompt."
            )
        user_prompt = f"{self._context_block(context)}\n\n{ask}"
        return await self.llm.complete_json_async(ORCHESTRATOR_SYSTEM_PROMPT, user_prompt, temperature=0.3)

    async def finalize(self, context: Dict, conversation: List[Dict]) -> Dict:
        user_prompt = (
            f"{self._context_block(context)}\n\n"
            f"CONVERSATION HISTORY:\n{conversation_transcript(conversation)}"
        )
        return await self.llm.complete_json_async(FINAL_PROMPT_SYSTEM_PROMPT, user_prompt, temperature=0.2)


def step_from_plan(plan: Dict) -> Dict:
    """Map a planner result to the assistant's next step."""
    reasoning = (plan.get("reasoning") or "").strip()
    questions = [q for q in (plan.get("questions") or []) if isinstance(q, str) and q.strip()]

    if plan.get("needs_clarification"):
        return {
            "step_type": StepType.QUESTION,
            "content": reasoning,
            "questions": questions or ["Could you provide more details?"],
            "can_proceed": False,
        }

    if plan.get("conflicts_with_best_practices"):
        issues = [i for i in (plan.get("best_practice_issues") or []) if isinstance(i, str)]
        return {
            "step_type": StepType.QUESTION,
            "content": "I noticed some conflicts with our best practices:\n\n" + "\n".join(issues) + f"\n\n{reasoning}",
            "questions": ["How would you like to address these best practice concerns?"],
            "best_practice_issues": issues,
            "can_proceed": False,
        }

    if plan.get("can_proceed") and (plan.get("suggested_prompt") or "").strip():
        return {
            "step_type": StepType.CONFIRMATION,
            "content": f"Great! I have everything I need. Here's what I'll generate:\n\n{reasoning}",
            "suggested_prompt": plan["suggested_prompt"].strip(),
            "can_proceed": True,
        }

    return {
        "step_type": StepType.QUESTION,
        "content": reasoning,
        "questions": questions or ["Could you provide more details?"],
        "can_proceed": False,
    }


def _assistant_turn(step: Dict) -> Dict:
    content = step["content"]
    if step.get("questions"):
        content = f"{content}\n\n" + "\n".join(f"- {q}" for q in step["questions"])
    return {"role": "assistant", "content": content.strip(), "timestamp": utcnow(), "step_type": step["step_type"]}


def _step_fields(step: Dict) -> Dict:
    can_proceed = step["can_proceed"]
    return {
        "state": FlowState.CONFIRMING if can_proceed else FlowState.COLLECTING,
        "needs_user_input": not can_proceed,
        "can_proceed": can_proceed,
        "suggested_prompt": step.get("suggested_prompt"),
        "last_step": step,
        "turn_pending": False,
        "turn_claimed_at": None,
    }


def flow_view(doc: Dict) -> Dict:
    return {
        "id": doc["id"],
        "organization_id": doc["organization_id"],
        "state": doc["state"],
        "needs_user_input": doc["needs_user_input"],
        "can_proceed": doc["can_proceed"],
        "is_complete": doc["state"] == FlowState.COMPLETE,
        "suggested_prompt": doc.get("suggested_prompt"),
        "final_prompt": doc.get("final_prompt"),
        "session_id": doc.get("session_id"),
        "conversation": list(doc.get("conversation", [])),
        "version": doc["version"],
    }


# =============================================================================
# ENGINE
# =============================================================================

class AgenticConversationEngine:
    """
    Usage:
        engine = AgenticConversationEngine(LLMFlowPlanner(), directory, campaigns)
        flow = await engine.start_flow(org, user, "thank our spring donors", donor_ids)
        flow = await engine.continue_flow(org, flow["id"], "mention the new clinic")
        final = await engine.generate_final_prompt(org, flow["id"])
        result = await engine.execute_generation(org, flow["id"], final["final_prompt"])
    """

    def __init__(
        self,
        planner: FlowPlanner,
        donor_directory: DonorDirectory,
        campaigns,
        notifier: Optional[ChangeNotifier] = None,
        timeout_seconds: float = None,
        turn_stale_seconds: float = None,
    ):
        self.planner = planner
        self.donor_directory = donor_directory
        self.campaigns = campaigns
        self.notifier = notifier or campaigns.notifier
        self.timeout_seconds = timeout_seconds or config.GENERATION_TIMEOUT_SECONDS
        self.turn_stale_seconds = turn_stale_seconds or config.STALE_FLOW_TURN_SECONDS

    def _load(self, organization_id: str, flow_id: str) -> Dict:
        return ensure_owned(AgenticFlowRecord.get(flow_id), organization_id, "agentic flow")

    def _publish(self, flow: Dict, **data):
        self.notifier.publish(flow.get("session_id"), flow["organization_id"], EventKind.FLOW_UPDATED,
                              flow_id=flow["id"], state=flow["state"], **data)

    def _turn_free(self) -> Dict:
        """Filter for flows that can take a new turn: none in flight, or the claim has expired."""
        return AgenticFlowRecord.turn_free_filter(utcnow() - timedelta(seconds=self.turn_stale_seconds))

    def _turn_in_flight(self, flow: Dict) -> bool:
        if not flow.get("turn_pending"):
            return False
        claimed_at = flow.get("turn_claimed_at")
        return claimed_at is None or claimed_at >= utcnow() - timedelta(seconds=self.turn_stale_seconds)

    async def _call_planner(self, coro):
        return await asyncio.wait_for(coro, timeout=self.timeout_seconds)

    def _build_context(self, organization_id: str, instruction: str, donor_ids: List[Any],
                       org_context: Optional[Dict]) -> Dict:
        org_context = org_context or {}
        sample_ids = list(donor_ids)[:DONOR_SAMPLE_SIZE]
        sample = []
        for donor in self.donor_directory.get_donors_by_ids(sample_ids, organization_id):
            sample.append({
                "name": format_donor_name(donor),
                "notes": donor.get("notes"),
                "total_donated": donor.get("total_donated"),
                "last_donation_date": donor.get("last_donation_date"),
            })
        return {
            "instruction": instruction,
            "organization_name": org_context.get("organization_name", ""),
            "writing_instructions": org_context.get("writing_instructions", ""),
            "current_date": org_context.get("current_date") or utcnow().strftime("%Y-%m-%d"),
            "donor_count": len(donor_ids),
            "donor_sample": sample,
        }

    async def start_flow(self, organization_id: str, user_id: str, instruction: str,
                         donor_ids: List[Any], org_context: Dict = None) -> Dict:
        if not instruction or not instruction.strip():
            raise ValidationError("instruction must not be blank")
        if not donor_ids:
            raise ValidationError("at least one donor is required")
        instruction = instruction.strip()
        donor_ids = list(dict.fromkeys(donor_ids))

        context = self._build_context(organization_id, instruction, donor_ids, org_context)
        user_turn = {"role": "user", "content": instruction, "timestamp": utcnow(), "step_type": None}
        plan = await self._call_planner(self.planner.plan(context, [user_turn]))
        step = step_from_plan(plan)

        fields = _step_fields(step)
        flow_id = AgenticFlowRecord.create(dict(
            fields,
            organization_id=organization_id,
            user_id=user_id,
            instruction=instruction,
            donor_ids=donor_ids,
            context=context,
            conversation=[user_turn, _assistant_turn(step)],
            final_prompt=None,
            session_id=None,
        ))
        flow = AgenticFlowRecord.get(flow_id)
        logger.info(
            f"flow_started: {flow_id[:8]}... org={organization_id} donors={len(donor_ids)} "
            f"step={step['step_type']} can_proceed={step['can_proceed']}"
        )
        self._publish(flow)
        return flow_view(flow)

    async def continue_flow(self, organization_id: str, flow_id: str, user_response: str) -> Dict:
        if not user_response or not user_response.strip():
            raise ValidationError("response must not be blank")
        flow = self._load(organization_id, flow_id)
        if flow["state"] not in FlowState.OPEN:
            raise InvalidStateError(f"flow is {flow['state']}; no further turns are accepted")
        if self._turn_in_flight(flow):
            raise ConcurrentModificationError("another turn is already in progress for this flow")

        user_turn = {"role": "user", "content": user_response.strip(), "timestamp": utcnow(), "step_type": None}
        claimed = AgenticFlowRecord.compare_and_set(
            flow_id, flow["version"], {"turn_pending": True, "turn_claimed_at": utcnow()},
            push_turns=[user_turn],
            extra_filter=dict(self._turn_free(), state={"$in": list(FlowState.OPEN)}),
        )
        if claimed is None:
            raise ConcurrentModificationError("flow changed while this turn was being submitted")

        try:
            plan = await self._call_planner(self.planner.plan(claimed["context"], claimed["conversation"]))
            step = step_from_plan(plan)
        except BaseException:
            AgenticFlowRecord.compare_and_set(flow_id, claimed["version"],
                                              {"turn_pending": False, "turn_claimed_at": None})
            raise

        updated = AgenticFlowRecord.compare_and_set(
            flow_id, claimed["version"], _step_fields(step), push_turns=[_assistant_turn(step)]
        )
        if updated is None:
            raise ConcurrentModificationError("flow changed while the next step was being planned")

        logger.info(
            f"flow_continued: {flow_id[:8]}... turns={len(updated['conversation'])} "
            f"step={step['step_type']} can_proceed={step['can_proceed']}"
        )
        self._publish(updated)
        return flow_view(updated)

    async def generate_final_prompt(self, organization_id: str, flow_id: str) -> Dict:
        flow = self._load(organization_id, flow_id)
        if flow["state"] not in FlowState.OPEN:
            raise InvalidStateError(f"flow is {flow['state']}")
        if not flow.get("can_proceed"):
            raise InvalidStateError("the conversation has not reached a confirmable prompt yet")

        result = await self._call_planner(self.planner.finalize(flow["context"], flow["conversation"]))
        final_prompt = (result.get("final_prompt") or flow.get("suggested_prompt") or "").strip()
        if not final_prompt:
            raise ValidationError("planner returned an empty prompt")
        complexity = result.get("estimated_complexity")
        if complexity not in COMPLEXITIES:
            complexity = "medium"

        updated = AgenticFlowRecord.compare_and_set(
            flow_id, flow["version"], {"final_prompt": final_prompt},
            extra_filter=self._turn_free(),
        )
        if updated is None:
            raise ConcurrentModificationError("flow changed while the final prompt was being written")

        logger.info(f"flow_final_prompt: {flow_id[:8]}... chars={len(final_prompt)} complexity={complexity}")
        return {
            "final_prompt": final_prompt,
            "summary": (result.get("summary") or "").strip(),
            "estimated_complexity": complexity,
        }

    async def execute_generation(self, organization_id: str, flow_id: str,
                                 confirmed_prompt: str = None) -> Dict:
        """
        Promote the flow into a CampaignSession (PENDING, carrying the
        conversation as chat history) and run generation.
        """
        flow = self._load(organization_id, flow_id)
        if flow["state"] not in FlowState.OPEN:
            raise InvalidStateError(f"flow is {flow['state']}; generation has already been started")
        if not flow.get("can_proceed"):
            raise InvalidStateError("the conversation has not reached a confirmable prompt yet")
        prompt = (confirmed_prompt or flow.get("final_prompt") or flow.get("suggested_prompt") or "").strip()
        if not prompt:
            raise ValidationError("confirmed prompt must not be blank")

        claimed = AgenticFlowRecord.compare_and_set(
            flow_id, flow["version"],
            {"state": FlowState.GENERATING, "final_prompt": prompt, "turn_pending": False, "turn_claimed_at": None},
            extra_filter=dict(self._turn_free(), state={"$in": list(FlowState.OPEN)}),
        )
        if claimed is None:
            raise ConcurrentModificationError("flow changed while generation was being started")

        try:
            session = self.campaigns.create_session(
                organization_id=organization_id,
                user_id=claimed["user_id"],
                instruction=claimed["instruction"],
                donor_ids=claimed["donor_ids"],
                launch=True,
                refined_instruction=prompt,
                chat_history=[
                    {k: turn.get(k) for k in ("role", "content", "timestamp", "step_type")}
                    for turn in claimed["conversation"]
                ],
            )
        except Exception:
            # back to the state the flow was claimed from
            AgenticFlowRecord.compare_and_set(flow_id, claimed["version"], {"state": flow["state"]})
            logger.error(f"flow_execute_failed: {flow_id[:8]}... session could not be created", exc_info=True)
            raise

        done = AgenticFlowRecord.compare_and_set(
            flow_id, claimed["version"],
            {"state": FlowState.COMPLETE, "session_id": session["id"],
             "needs_user_input": False, "can_proceed": False},
            push_turns=[{"role": "assistant", "content": "Generating emails.", "timestamp": utcnow(),
                         "step_type": StepType.COMPLETE}],
        )
        logger.info(f"flow_executed: {flow_id[:8]}... session={session['id'][:8]}...")
        self._publish(done or AgenticFlowRecord.get(flow_id))

        result = await self.campaigns.generate_emails(organization_id, session["id"])
        return {"flow": flow_view(done or AgenticFlowRecord.get(flow_id)), "session": result}

    def get_flow(self, organization_id: str, flow_id: str) -> Dict:
        return flow_view(self._load(organization_id, flow_id))
