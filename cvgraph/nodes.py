"""CV-builder nodes: router, generator, analyzer, tailorer, gap_finder, coach, retriever.

Each node reads the blackboard, makes at most one language-model call (or
one retrieval), and returns a patch.  Nodes whose prerequisites are missing
(no profile, no job, …) answer with a short assistant message and ``done``
rather than ``error``: the user simply has to supply the data.

The router asks the model for a fenced YAML decision:

    ```yaml
    next_action: generate_resume
    reply: I'll generate your resume now.
    ```

and maps ``next_action`` onto a ``route-to-<node>`` signal.  There is no
keyword guessing: output without a recognisable action is a
RoutingAmbiguityError and the router re-consults itself (at most
``ROUTER_MAX_AMBIGUOUS`` times in a row, then asks the user to rephrase).
"""

from __future__ import annotations

import json
import re
from abc import abstractmethod
from datetime import datetime, timezone
from typing import Any, Sequence

import yaml

from cvgraph.errors import NodeExecutionError, RoutingAmbiguityError
from cvgraph.llm import ChatModel
from cvgraph.logging import get_logger
from cvgraph.node import Node, Patch
from cvgraph.retrieval import Retriever, check_k
from cvgraph.state import DONE, ROUTER, Artifact, BlackboardState, Message, route_to

_log = get_logger("nodes")

GENERATOR = "generator"
ANALYZER = "analyzer"
TAILORER = "tailorer"
GAP_FINDER = "gap_finder"
COACH = "coach"
RETRIEVER = "retriever"

# router decision → node name
ACTIONS = {
    "generate_resume": GENERATOR,
    "analyze_job": ANALYZER,
    "tailor_resume": TAILORER,
    "analyze_skills_gap": GAP_FINDER,
    "prepare_interview": COACH,
    "retrieve_context": RETRIEVER,
}

ROUTER_MAX_AMBIGUOUS = 2
_AMBIGUITY_KEY = "router_ambiguous_turns"


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def extract_json(text: str) -> dict[str, Any]:
    """Return the first JSON object in *text*, inside a ```json fence if there is one.

    Prose before or after the object is ignored, braces included.
    """
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL | re.IGNORECASE)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    if start < 0:
        raise NodeExecutionError("no JSON object found in model output")
    try:
        data, _ = json.JSONDecoder().raw_decode(text, start)
    except ValueError as exc:
        raise NodeExecutionError(f"malformed JSON in model output: {exc}") from exc
    return data


def parse_routing_decision(text: str, allowed: Sequence[str]) -> tuple[str, str]:
    """Parse the router's YAML block → (next_action, reply).

    Raises RoutingAmbiguityError when the block is missing, malformed, or
    names an action outside *allowed* (plus ``done``).
    """
    match = re.search(r"```ya?ml(.*?)```", text, re.DOTALL | re.IGNORECASE)
    if not match:
        raise RoutingAmbiguityError("router output has no ```yaml decision block")
    try:
        decision = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise RoutingAmbiguityError(f"router decision is not valid YAML: {exc}") from exc
    if not isinstance(decision, dict) or "next_action" not in decision:
        raise RoutingAmbiguityError("router decision lacks next_action")

    action = str(decision["next_action"]).strip()
    if action != DONE and action not in allowed:
        raise RoutingAmbiguityError(f"unknown next_action {action!r}")
    reply = decision.get("reply") or text[: match.start()].strip()
    return action, str(reply).strip()


# ── Base class for single-call chat nodes ────────────────────────────────────

class ChatNode(Node):
    """A node that checks prerequisites, calls the model once, builds a patch.

    Subclasses set ``requires`` / ``missing_message`` and implement
    ``build_prompt`` and ``handle``.
    """

    requires: tuple[str, ...] = ()
    missing_message: str = "I'm missing some information to do that."

    def __init__(self, llm: ChatModel, name: str | None = None):
        super().__init__(name)
        self.llm = llm

    @abstractmethod
    def build_prompt(self, state: BlackboardState) -> tuple[str, list[Message]]:
        """Return (system prompt, messages) for the model call."""

    @abstractmethod
    def handle(self, state: BlackboardState, text: str) -> Patch:
        """Turn the model reply into a patch."""

    def prep(self, state: BlackboardState):
        missing = [f for f in self.requires if not getattr(state, f)]
        if missing:
            _log.warning("Node '%s' missing prerequisites: %s", self.name, missing)
            return None
        return self.build_prompt(state)

    def exec(self, prep_result):
        if prep_result is None:
            return None
        system_prompt, history = prep_result
        return self.llm.invoke(system_prompt, history)

    def post(self, state: BlackboardState, prep_result, exec_result) -> Patch:
        if exec_result is None:
            return {
                "conversation_history": [Message.assistant(self.missing_message, name=self.name)],
                "routing_signal": DONE,
            }
        return self.handle(state, exec_result)

    def reply(self, content: str) -> Message:
        return Message.assistant(content, name=self.name)


# ── Router ───────────────────────────────────────────────────────────────────

ROUTER_PROMPT = """You are the orchestrator of a CV builder. Decide which specialist
handles the user's latest request.

Actions:
  generate_resume     create a resume (needs a user profile)
  analyze_job         analyse the active job listing, match score
  tailor_resume       tailor the resume to the active job (profile + job)
  analyze_skills_gap  learning plan for the active job (profile + job + analysis)
  prepare_interview   cover letter and talking points (profile + job)
  retrieve_context    look up reference material
  done                answer directly, or ask for missing data

Choose ONE action. Reply in exactly this format:

```yaml
next_action: <action>
reply: <one or two sentences for the user>
```"""


class RouterNode(ChatNode):
    """Hub node: consulted after every specialist step."""

    name = ROUTER

    def __init__(self, llm: ChatModel, routes: dict[str, str] | None = None, name: str | None = None):
        super().__init__(llm, name)
        self.routes = dict(routes if routes is not None else ACTIONS)

    def prep(self, state: BlackboardState):
        last = state.last_message
        if last is None or last.role != "user":
            return None
        return self.build_prompt(state)

    def build_prompt(self, state: BlackboardState) -> tuple[str, list[Message]]:
        context = []
        if state.user_profile:
            context.append("- user profile loaded")
        if state.active_job:
            context.append(f"- active job: {state.active_job.get('title', 'untitled')}")
        if state.analysis_results:
            context.append("- job analysis available")
        if state.learning_plan:
            context.append("- learning plan available")
        if state.retrieval_result:
            context.append("- reference material retrieved")
        loaded = "\n".join(context) or "- nothing loaded yet"
        available = ", ".join(sorted(self.routes))
        system = f"{ROUTER_PROMPT}\n\nAvailable actions: {available}, done\n\nCurrent state:\n{loaded}"
        return system, list(state.conversation_history)

    def post(self, state: BlackboardState, prep_result, exec_result) -> Patch:
        if exec_result is None:
            return {
                "conversation_history": [self.reply("I need a request to process.")],
                "routing_signal": DONE,
            }

        ambiguous = int(state.metadata.get(_AMBIGUITY_KEY, 0))
        try:
            action, text = parse_routing_decision(exec_result, list(self.routes))
        except RoutingAmbiguityError as exc:
            ambiguous += 1
            metadata = {**state.metadata, _AMBIGUITY_KEY: ambiguous}
            if ambiguous >= ROUTER_MAX_AMBIGUOUS:
                _log.warning("Router gave up after %d ambiguous decisions: %s", ambiguous, exc)
                return {
                    "conversation_history": [self.reply(
                        "I'm not sure what you'd like me to do. Could you rephrase your request?"
                    )],
                    "metadata": {**metadata, _AMBIGUITY_KEY: 0},
                    "routing_signal": DONE,
                }
            _log.warning("Routing ambiguity (%d/%d), re-consulting router: %s",
                         ambiguous, ROUTER_MAX_AMBIGUOUS, exc)
            return {"metadata": metadata, "routing_signal": route_to(ROUTER)}

        patch: Patch = {
            "routing_signal": DONE if action == DONE else route_to(self.routes[action]),
        }
        if text:
            patch["conversation_history"] = [self.reply(text)]
        if ambiguous:
            patch["metadata"] = {**state.metadata, _AMBIGUITY_KEY: 0}
        _log.info("Router decided  action=%s", action)
        return patch


# ── Specialists ──────────────────────────────────────────────────────────────

class GeneratorNode(ChatNode):
    """Turn the user profile into a Markdown resume."""

    name = GENERATOR
    requires = ("user_profile",)
    missing_message = (
        "I need your profile to generate a resume. "
        "Please provide your professional details first."
    )

    def build_prompt(self, state):
        system = (
            "You write polished, ATS-friendly resumes in Markdown: contact, summary, "
            "experience (action verbs, quantified results), education, skills, projects."
        )
        task = f"Generate a professional resume from this profile:\n\n{_dump(state.user_profile)}"
        if state.active_job:
            job = state.active_job
            task += (
                f"\n\nEmphasise fit for: {job.get('title', '')} at {job.get('company', '')}\n"
                f"{job.get('description', '')}"
            )
        return system, [Message.user(task)]

    def handle(self, state, text):
        job_id = (state.active_job or {}).get("id")
        artifact = Artifact.new("resume", text, job_id=job_id,
                                format="markdown", tailored=bool(state.active_job))
        label = "tailored " if state.active_job else ""
        return {
            "generated_artifacts": [artifact],
            "conversation_history": [self.reply(f"I've generated your {label}resume:\n\n{text}")],
            "routing_signal": DONE,
        }


class AnalyzerNode(ChatNode):
    """Extract requirements from the active job; score the match if a profile exists."""

    name = ANALYZER
    requires = ("active_job",)
    missing_message = "I need a job listing to analyze. Please provide the job details."

    def build_prompt(self, state):
        system = "You analyse job listings for key requirements and industry terms."
        task = f"Analyze this job listing:\n\n{_dump(state.active_job)}\n"
        if state.user_profile:
            task += f"\nCandidate profile:\n{_dump(state.user_profile)}\nScore the match 0-100.\n"
        task += (
            '\nAnswer with JSON: {"key_requirements": [{"skill": "", "importance": '
            '"critical|important|nice-to-have", "category": "technical|soft-skill|experience|'
            'education"}], "industry_terms": [], "match_score": 0, "recommendations": []}'
        )
        return system, [Message.user(task)]

    def handle(self, state, text):
        data = extract_json(text)
        requirements = data.get("key_requirements")
        if not isinstance(requirements, list):
            raise NodeExecutionError("analysis lacks a key_requirements list", self.name)
        score = data.get("match_score")
        if score is not None and not (isinstance(score, (int, float)) and 0 <= score <= 100):
            raise NodeExecutionError(f"match_score out of range: {score!r}", self.name)
        analysis = {
            "job_id": state.active_job.get("id"),
            "key_requirements": requirements,
            "industry_terms": list(data.get("industry_terms") or []),
            "match_score": score,
            "recommendations": list(data.get("recommendations") or []),
        }
        summary = f"Job analysis complete: {len(requirements)} key requirement(s)"
        if score is not None:
            summary += f", match score {score}"
        return {
            "analysis_results": analysis,
            "conversation_history": [self.reply(summary + ".")],
            "routing_signal": DONE,
        }


class TailorerNode(ChatNode):
    """Rewrite the resume for the active job."""

    name = TAILORER
    requires = ("user_profile", "active_job")
    missing_message = "I need both your profile and a job listing to tailor your resume."

    def build_prompt(self, state):
        system = (
            "You tailor resumes to a specific job: use its keywords, emphasise relevant "
            "experience, stay truthful. Output Markdown."
        )
        task = (
            f"Candidate profile:\n{_dump(state.user_profile)}\n\n"
            f"Target job:\n{_dump(state.active_job)}\n"
        )
        if state.analysis_results:
            task += f"\nJob analysis:\n{_dump(state.analysis_results)}\n"
        if state.retrieval_result:
            task += f"\nReference material:\n{_dump(state.retrieval_result.get('documents'))}\n"
        return system, [Message.user(task)]

    def handle(self, state, text):
        job = state.active_job
        artifact = Artifact.new("resume", text, job_id=job.get("id"), format="markdown", tailored=True)
        return {
            "generated_artifacts": [artifact],
            "conversation_history": [self.reply(
                f"I've tailored your resume for {job.get('title', 'the role')} "
                f"at {job.get('company', 'the company')}:\n\n{text}"
            )],
            "routing_signal": DONE,
        }


class GapFinderNode(ChatNode):
    """Compare profile with job analysis and produce a learning plan."""

    name = GAP_FINDER
    requires = ("user_profile", "active_job", "analysis_results")
    missing_message = (
        "I need your profile, a job listing and a job analysis to identify skill gaps."
    )

    def build_prompt(self, state):
        system = "You find skill gaps and write practical, encouraging learning plans."
        task = (
            f"Candidate profile:\n{_dump(state.user_profile)}\n\n"
            f"Job requirements:\n{_dump(state.analysis_results)}\n\n"
            'Answer with JSON: {"gaps": [{"skill": "", "current_level": "", '
            '"target_level": "", "priority": "high|medium|low"}], "resources": '
            '[{"skill": "", "type": "", "title": "", "url": "", "estimated_hours": 0}], '
            '"exercises": [{"skill": "", "description": "", "difficulty": "easy|medium|hard"}]}'
        )
        return system, [Message.user(task)]

    def handle(self, state, text):
        data = extract_json(text)
        gaps = data.get("gaps")
        if not isinstance(gaps, list):
            raise NodeExecutionError("learning plan lacks a gaps list", self.name)
        job_id = state.active_job.get("id")
        plan = {
            "job_id": job_id,
            "gaps": gaps,
            "resources": list(data.get("resources") or []),
            "exercises": list(data.get("exercises") or []),
        }
        return {
            "learning_plan": plan,
            "generated_artifacts": [Artifact.new("learning_plan", plan, job_id=job_id)],
            "conversation_history": [self.reply(
                f"Learning plan created: {len(gaps)} skill gap(s), "
                f"{len(plan['resources'])} resource(s)."
            )],
            "routing_signal": DONE,
        }


_TALKING_POINTS = re.compile(r"^#{1,6}\s*Talking Points\s*:?\s*$", re.MULTILINE | re.IGNORECASE)
_LETTER_HEADING = re.compile(r"^\s*#{1,6}\s*Cover Letter\s*:?\s*\n", re.IGNORECASE)


class CoachNode(ChatNode):
    """Cover letter and interview talking points."""

    name = COACH
    requires = ("user_profile", "active_job")
    missing_message = "I need your profile and a job listing to prepare interview materials."

    def build_prompt(self, state):
        system = "You are an interview coach and cover-letter writer."
        task = (
            f"Candidate profile:\n{_dump(state.user_profile)}\n\n"
            f"Target job:\n{_dump(state.active_job)}\n\n"
            "Write a cover letter (under 400 words), then a '## Talking Points' section "
            "with 5-7 bullet points. Markdown."
        )
        return system, [Message.user(task)]

    def handle(self, state, text):
        letter, *rest = _TALKING_POINTS.split(text, maxsplit=1)
        letter = _LETTER_HEADING.sub("", letter, count=1).strip()
        talking_points = []
        if rest:
            for line in rest[0].splitlines():
                stripped = line.strip()
                if stripped.startswith("#"):
                    break
                if stripped.startswith(("-", "*")):
                    talking_points.append(stripped.lstrip("-* ").strip())
        content = {"letter": letter, "talking_points": talking_points}
        artifact = Artifact.new("cover_letter", content, job_id=state.active_job.get("id"))
        return {
            "generated_artifacts": [artifact],
            "conversation_history": [self.reply(f"Interview preparation complete.\n\n{text}")],
            "routing_signal": DONE,
        }


class RetrieverNode(Node):
    """Look up reference material for the current request."""

    name = RETRIEVER

    def __init__(self, retriever: Retriever | None, k: int = 4, name: str | None = None):
        super().__init__(name)
        self.retriever = retriever
        self.k = check_k(k)

    def prep(self, state: BlackboardState) -> str | None:
        if self.retriever is None:
            return None
        parts = []
        if state.active_job:
            parts.append(str(state.active_job.get("title", "")))
        last_user = next(
            (m for m in reversed(state.conversation_history) if m.role == "user"), None
        )
        if last_user:
            parts.append(last_user.content)
        return " ".join(p for p in parts if p) or "resume writing best practices"

    def exec(self, query):
        if query is None:
            return None
        return self.retriever.retrieve(query, self.k)

    def post(self, state, query, documents) -> Patch:
        if documents is None:
            _log.warning("Retriever node has no retriever configured")
            return {
                "conversation_history": [Message.assistant(
                    "Reference lookup is not configured.", name=self.name
                )],
                "routing_signal": DONE,
            }
        result = {
            "query": query,
            "documents": [d.to_dict() for d in documents],
            "retrieved_at": datetime.now(timezone.utc).isoformat(),
        }
        return {
            "retrieval_result": result,
            "conversation_history": [Message.assistant(
                f"Retrieved {len(documents)} relevant document(s).", name=self.name
            )],
            "routing_signal": DONE,
        }


def build_nodes(llm: ChatModel, retriever: Retriever | None = None, k: int = 4) -> list[Node]:
    """The standard CV-builder node set, router first."""
    routes = dict(ACTIONS)
    if retriever is None:
        routes.pop("retrieve_context")
    nodes: list[Node] = [
        RouterNode(llm, routes),
        GeneratorNode(llm),
        AnalyzerNode(llm),
        TailorerNode(llm),
        GapFinderNode(llm),
        CoachNode(llm),
    ]
    if retriever is not None:
        nodes.append(RetrieverNode(retriever, k))
    return nodes
