"""CV-builder nodes driven by a scripted chat model (no network)."""

import pytest

from cvgraph.config import Settings
from cvgraph.engine import WorkflowEngine
from cvgraph.errors import NodeExecutionError, RoutingAmbiguityError
from cvgraph.llm import LLMCallError
from cvgraph.nodes import (
    ACTIONS,
    AnalyzerNode,
    ChatNode,
    CoachNode,
    GapFinderNode,
    GeneratorNode,
    RetrieverNode,
    RouterNode,
    TailorerNode,
    build_nodes,
    extract_json,
    parse_routing_decision,
)
from cvgraph.retrieval import Document, VectorRetriever
from cvgraph.state import DONE, ERROR, ROUTER, BlackboardState, Message, merge_state, route_to

PROFILE = {"name": "Ada Lovelace", "skills": ["python", "sql"], "experience": []}
JOB = {"id": "j1", "title": "Data Engineer", "company": "Acme", "description": "Pipelines"}
ANALYSIS = {"job_id": "j1", "key_requirements": [{"skill": "spark"}], "match_score": 70}

VOCAB = ["resume", "interview", "python", "learning", "cover", "letter"]


def embed(texts):
    return [[t.lower().count(w) for w in VOCAB] for t in texts]


def _decision(action, reply="On it."):
    return f"Sure.\n```yaml\nnext_action: {action}\nreply: {reply}\n```"


def _state(text="help me", **fields):
    return BlackboardState.initial("t-1", "u-1", conversation_history=[Message.user(text)], **fields)


# ── Parsing helpers ───────────────────────────────────────────────────────────

def test_parse_routing_decision():
    action, reply = parse_routing_decision(_decision("analyze_job", "Analyzing."), list(ACTIONS))
    assert (action, reply) == ("analyze_job", "Analyzing.")


def test_parse_routing_decision_done_is_always_allowed():
    assert parse_routing_decision(_decision("done", "Hello!"), [])[0] == DONE


def test_parse_routing_decision_reply_falls_back_to_prose():
    text = "I'll write it.\n```yaml\nnext_action: generate_resume\n```"
    assert parse_routing_decision(text, list(ACTIONS)) == ("generate_resume", "I'll write it.")


@pytest.mark.parametrize("text", [
    "just some prose",
    "```yaml\nnext_action: [unclosed\n```",
    "```yaml\nreply: no action here\n```",
    _decision("book_flight"),
])
def test_parse_routing_decision_ambiguous(text):
    with pytest.raises(RoutingAmbiguityError):
        parse_routing_decision(text, list(ACTIONS))


def test_extract_json():
    assert extract_json('Here you go: {"a": {"b": 1}} thanks') == {"a": {"b": 1}}


def test_extract_json_ignores_braces_in_trailing_prose():
    text = '{"key_requirements": [], "match_score": 50}\nLet me know if {anything} else.'
    assert extract_json(text) == {"key_requirements": [], "match_score": 50}


def test_extract_json_prefers_fenced_block():
    text = 'Use {braces} like this:\n```json\n{"gaps": [{"skill": "spark"}]}\n```\nThen {more}.'
    assert extract_json(text) == {"gaps": [{"skill": "spark"}]}


@pytest.mark.parametrize("text", ["no object here", '{"a": 1,'])
def test_extract_json_rejects(text):
    with pytest.raises(NodeExecutionError):
        extract_json(text)


# ── Router ────────────────────────────────────────────────────────────────────

def test_router_routes_to_specialist(scripted):
    chat = scripted(_decision("generate_resume", "I'll generate your resume."))
    patch = RouterNode(chat).run(_state("build my resume", user_profile=PROFILE))
    assert patch["routing_signal"] == route_to("generator")
    assert patch["conversation_history"][0].content == "I'll generate your resume."
    assert patch["active_node"] == ROUTER
    system, history = chat.calls[0]
    assert "user profile loaded" in system
    assert history[-1].content == "build my resume"


def test_router_done_answers_directly(scripted):
    patch = RouterNode(scripted(_decision("done", "Hi! How can I help?"))).run(_state("hello"))
    assert patch["routing_signal"] == DONE
    assert patch["conversation_history"][0].content == "Hi! How can I help?"


def test_router_needs_a_user_message(scripted):
    chat = scripted()
    state = BlackboardState.initial("t-1", conversation_history=[Message.assistant("hi")])
    patch = RouterNode(chat).run(state)
    assert patch["routing_signal"] == DONE
    assert patch["conversation_history"][0].content == "I need a request to process."
    assert chat.calls == []


def test_router_ambiguity_reconsults_then_gives_up(scripted):
    router = RouterNode(scripted("no idea", "still no idea"))
    state = _state("hmm")

    first = router.run(state)
    assert first["routing_signal"] == route_to(ROUTER)
    assert first["metadata"]["router_ambiguous_turns"] == 1
    assert "conversation_history" not in first

    state = merge_state(state, first)
    second = router.run(state)
    assert second["routing_signal"] == DONE
    assert "rephrase" in second["conversation_history"][0].content
    assert second["metadata"]["router_ambiguous_turns"] == 0


def test_router_clear_decision_resets_ambiguity(scripted):
    router = RouterNode(scripted(_decision("analyze_job")))
    state = _state(metadata={"router_ambiguous_turns": 1})
    patch = router.run(state)
    assert patch["routing_signal"] == route_to("analyzer")
    assert patch["metadata"]["router_ambiguous_turns"] == 0


def test_router_llm_failure_is_an_error(scripted):
    patch = RouterNode(scripted(LLMCallError("all providers failed"))).run(_state())
    assert patch["routing_signal"] == ERROR
    assert "all providers failed" in patch["conversation_history"][0].content


def test_router_only_offers_registered_actions(scripted):
    routes = {k: v for k, v in ACTIONS.items() if k != "retrieve_context"}
    patch = RouterNode(scripted(_decision("retrieve_context")), routes).run(_state())
    assert patch["routing_signal"] == route_to(ROUTER)


# ── Specialists ───────────────────────────────────────────────────────────────

def test_generator(scripted):
    chat = scripted("# Ada Lovelace\n\n## Skills\n- Python")
    patch = GeneratorNode(chat).run(_state(user_profile=PROFILE))
    assert patch["routing_signal"] == DONE
    artifact = patch["generated_artifacts"][0]
    assert artifact.kind == "resume"
    assert artifact.content.startswith("# Ada Lovelace")
    assert artifact.metadata == {"format": "markdown", "tailored": False}
    assert "Ada Lovelace" in chat.calls[0][1][0].content


def test_generator_without_profile_asks_for_it(scripted):
    chat = scripted()
    patch = GeneratorNode(chat).run(_state())
    assert patch["routing_signal"] == DONE
    assert "profile" in patch["conversation_history"][0].content
    assert "generated_artifacts" not in patch
    assert chat.calls == []


def test_analyzer(scripted):
    reply = (
        '```json\n{"key_requirements": [{"skill": "python", "importance": "critical", '
        '"category": "technical"}], "industry_terms": ["ETL"], "match_score": 80, '
        '"recommendations": ["Highlight pipelines"]}\n```'
    )
    patch = AnalyzerNode(scripted(reply)).run(_state(user_profile=PROFILE, active_job=JOB))
    results = patch["analysis_results"]
    assert results["job_id"] == "j1"
    assert results["match_score"] == 80
    assert results["industry_terms"] == ["ETL"]
    assert "match score 80" in patch["conversation_history"][0].content


def test_analyzer_rejects_bad_score(scripted):
    reply = '{"key_requirements": [], "match_score": 140}'
    patch = AnalyzerNode(scripted(reply)).run(_state(active_job=JOB))
    assert patch["routing_signal"] == ERROR
    assert "analysis_results" not in patch


def test_analyzer_rejects_non_json(scripted):
    patch = AnalyzerNode(scripted("I think it's a great job!")).run(_state(active_job=JOB))
    assert patch["routing_signal"] == ERROR


def test_analyzer_without_job(scripted):
    patch = AnalyzerNode(scripted()).run(_state())
    assert patch["routing_signal"] == DONE
    assert "job listing" in patch["conversation_history"][0].content


def test_tailorer(scripted):
    chat = scripted("# Ada, Data Engineer")
    state = _state(user_profile=PROFILE, active_job=JOB, analysis_results=ANALYSIS)
    patch = TailorerNode(chat).run(state)
    artifact = patch["generated_artifacts"][0]
    assert artifact.job_id == "j1"
    assert artifact.metadata["tailored"] is True
    assert "Acme" in patch["conversation_history"][0].content
    assert "Job analysis" in chat.calls[0][1][0].content


def test_tailorer_needs_profile_and_job(scripted):
    patch = TailorerNode(scripted()).run(_state(user_profile=PROFILE))
    assert patch["routing_signal"] == DONE
    assert "generated_artifacts" not in patch


def test_gap_finder(scripted):
    reply = (
        '{"gaps": [{"skill": "spark", "current_level": "none", "target_level": "working", '
        '"priority": "high"}], "resources": [{"skill": "spark", "type": "course", '
        '"title": "Spark basics", "url": "", "estimated_hours": 10}], "exercises": []}'
    )
    state = _state(user_profile=PROFILE, active_job=JOB, analysis_results=ANALYSIS)
    patch = GapFinderNode(scripted(reply)).run(state)
    plan = patch["learning_plan"]
    assert plan["job_id"] == "j1"
    assert plan["gaps"][0]["skill"] == "spark"
    assert patch["generated_artifacts"][0].kind == "learning_plan"
    assert patch["generated_artifacts"][0].content == plan


def test_gap_finder_needs_analysis(scripted):
    patch = GapFinderNode(scripted()).run(_state(user_profile=PROFILE, active_job=JOB))
    assert patch["routing_signal"] == DONE
    assert "learning_plan" not in patch


def test_coach(scripted):
    reply = (
        "Dear Acme team,\nI am excited to apply.\n\n"
        "## Talking Points\n- Built ETL pipelines\n- Mentored engineers\n"
    )
    patch = CoachNode(scripted(reply)).run(_state(user_profile=PROFILE, active_job=JOB))
    artifact = patch["generated_artifacts"][0]
    assert artifact.kind == "cover_letter"
    assert artifact.content["letter"].startswith("Dear Acme team")
    assert artifact.content["talking_points"] == ["Built ETL pipelines", "Mentored engineers"]


def test_coach_reply_opening_with_heading(scripted):
    reply = (
        "## Cover Letter\nDear Acme team,\n- I built pipelines\n\n"
        "## Talking Points\n- Built ETL pipelines\n- Mentored engineers\n\n"
        "## Questions to Ask\n- What does the team ship?\n"
    )
    patch = CoachNode(scripted(reply)).run(_state(user_profile=PROFILE, active_job=JOB))
    content = patch["generated_artifacts"][0].content
    assert content["letter"] == "Dear Acme team,\n- I built pipelines"
    assert content["talking_points"] == ["Built ETL pipelines", "Mentored engineers"]


def test_coach_without_talking_points(scripted):
    patch = CoachNode(scripted("Dear Acme team,\n- I built pipelines")).run(
        _state(user_profile=PROFILE, active_job=JOB)
    )
    content = patch["generated_artifacts"][0].content
    assert content["letter"].startswith("Dear Acme team")
    assert content["talking_points"] == []


def test_chat_node_requires_prompt_and_handler(scripted):
    class _Half(ChatNode):
        name = "half"

        def build_prompt(self, state):
            return "system", []

    with pytest.raises(TypeError):
        _Half(scripted())


# ── Retriever ─────────────────────────────────────────────────────────────────

DOCS = [
    Document("Resume layout tips", {"source": "guide"}),
    Document("Interview questions for python roles", {"source": "faq"}),
    Document("Cover letter guide"),
]


def test_retriever_node():
    node = RetrieverNode(VectorRetriever(embed, DOCS), k=2)
    patch = node.run(_state("interview tips"))
    result = patch["retrieval_result"]
    assert result["query"] == "interview tips"
    assert len(result["documents"]) == 2
    assert result["documents"][0]["text"].startswith("Interview")
    assert patch["routing_signal"] == DONE


def test_retriever_query_includes_job_title():
    node = RetrieverNode(VectorRetriever(embed, DOCS), k=1)
    patch = node.run(_state("tips", active_job={"id": "j", "title": "Python developer"}))
    assert patch["retrieval_result"]["query"] == "Python developer tips"


def test_retriever_not_configured():
    patch = RetrieverNode(None).run(_state())
    assert patch["routing_signal"] == DONE
    assert "not configured" in patch["conversation_history"][0].content


def test_retriever_k_bounds():
    with pytest.raises(ValueError):
        RetrieverNode(None, k=0)
    with pytest.raises(ValueError):
        RetrieverNode(None, k=21)


# ── Full graph ────────────────────────────────────────────────────────────────

def test_build_nodes_without_retriever(scripted):
    names = [n.name for n in build_nodes(scripted())]
    assert names == ["router", "generator", "analyzer", "tailorer", "gap_finder", "coach"]
    with_retriever = [n.name for n in build_nodes(scripted(), VectorRetriever(embed, DOCS))]
    assert with_retriever[-1] == "retriever"


def test_analyze_job_end_to_end(scripted, checkpoints, threads):
    chat = scripted(
        _decision("analyze_job", "Let me analyze that job."),
        '{"key_requirements": [{"skill": "spark"}], "match_score": 65}',
    )
    engine = WorkflowEngine(checkpoints, threads, nodes=build_nodes(chat))
    thread = threads.create("u-1")
    engine.update_state(thread.id, {"user_profile": PROFILE, "active_job": JOB})

    final = engine.invoke(thread.id, {"conversation_history": [Message.user("analyze this job")]})

    assert final.routing_signal == DONE
    assert final.analysis_results["match_score"] == 65
    assert [m.name for m in final.conversation_history] == [None, "router", "analyzer"]
    assert len(list(checkpoints.list(thread.id))) == 3


def test_from_settings_wiring(scripted, tmp_path):
    settings = Settings(db_path=str(tmp_path / "cv.db"), max_steps=7, node_timeout=5.0)
    engine = WorkflowEngine.from_settings(settings, llm=scripted(_decision("done", "Hi.")))
    assert engine.max_steps == 7
    assert engine.node_timeout == 5.0
    assert "retriever" not in engine.node_names
    final = engine.invoke("t-1", {"conversation_history": [Message.user("hello")]})
    assert final.conversation_history[-1].content == "Hi."
