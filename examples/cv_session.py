"""cvgraph — one CV-builder conversation, end to end.

Run:
    export ANTHROPIC_API_KEY=...        # or LLM_PROVIDER=openai + OPENAI_API_KEY
    python examples/cv_session.py
"""

from cvgraph import Message, WorkflowEngine, load_settings
from cvgraph.logging import setup_logging

PROFILE = {
    "name": "Ada Lovelace",
    "email": "ada@example.com",
    "summary": "Analytical engineer who turns numbers into working programs.",
    "skills": ["python", "sql", "data pipelines"],
    "experience": [
        {"title": "Data Engineer", "company": "Analytical Engines Ltd", "years": 3,
         "highlights": ["Cut nightly batch time from 6h to 40m"]},
    ],
}

JOB = {
    "id": "job-001",
    "title": "Senior Data Engineer",
    "company": "Acme Analytics",
    "description": "Build streaming pipelines with Spark and Kafka.",
}


if __name__ == "__main__":
    settings = load_settings()
    setup_logging("cv_session", log_level=settings.log_level)
    engine = WorkflowEngine.from_settings(settings)
    engine.on("node_end", lambda tid, name, signal, elapsed, s:
        print(f"  ✓ {name} → '{signal}'  ({elapsed*1000:.1f}ms)"))

    thread = engine.threads.create("demo-user", title="Acme application")
    engine.update_state(thread.id, {
        "user_profile": PROFILE,
        "active_job": JOB,
        "job_catalog": {JOB["id"]: JOB},
    })

    for request in ("Please analyze this job for me.", "Now tailor my resume to it."):
        print(f"\nuser: {request}")
        for state in engine.stream(thread.id, {"conversation_history": [Message.user(request)]}):
            pass
        print(f"{state.active_node}: {state.last_message.content[:400]}")

    print(f"\nArtifacts: {[a.kind for a in state.generated_artifacts]}")
    print("History (newest first):")
    for snap in engine.get_state_history(thread.id):
        print(f"  {snap.checkpoint_id}  node={snap.step_metadata.get('node')}")
