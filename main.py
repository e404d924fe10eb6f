"""agentflow - multi-phase research agent

Simple CLI for running one agent session, or serving the HTTP API.
"""

import argparse
import asyncio

from agentflow.agents.contents import build_session
from agentflow.agents.orchestrator import AgentOrchestrator
from agentflow.config import AgentConfig, settings
from agentflow.llm_client import client, get_model


class PrintSink:
    """Writes the session's event stream to the terminal."""

    def __init__(self, show_thoughts: bool = False):
        self.show_thoughts = show_thoughts
        self.step: str | None = None

    def emit(self, event: str, payload: dict) -> None:
        if event == "chunk":
            step = payload.get("step")
            if step != self.step and payload.get("parts"):
                self.step = step
                print(f"\n[~] {str(step).upper()}")
            for part in payload.get("parts", []):
                if part.get("thought") and not self.show_thoughts:
                    continue
                print(part.get("text", ""), end="", flush=True)
            grounding = payload.get("grounding")
            if grounding:
                print(f"\n\n[*] Sources ({len(grounding.get('sources', []))}):")
                for source in grounding.get("sources", []):
                    print(f"  - {source.get('title')} ({source.get('uri')})")
        elif event == "end_generation":
            print("\n\n[*] Done.")
        elif event == "error":
            print(f"\n[!] Error: {payload.get('message', 'Unknown error')}")


async def run_agent(query: str, model: str | None = None, max_cycles: int | None = None, show_thoughts: bool = False):
    """Run one agent session on the given query."""
    base_model = model or get_model()
    print(f"Query: {query}")
    print(f"Model: {base_model}")
    print("-" * 50)

    agent_config = AgentConfig.from_settings(settings, max_cycles=max_cycles)
    session = build_session(
        contents=[{"role": "user", "parts": [{"text": query}]}],
        base_model=base_model,
        agent_config=agent_config,
        default_instruction=settings.resolve_system_instruction(),
    )
    orchestrator = AgentOrchestrator(
        session,
        upstream=client(),
        sink=PrintSink(show_thoughts=show_thoughts),
        config=agent_config,
    )
    report = await orchestrator.run()
    print(f"   Phases: {' -> '.join(report.phases)}")
    print(f"   Tokens: {report.total_usage().total_tokens}")


def main():
    parser = argparse.ArgumentParser(description="agentflow research agent")
    parser.add_argument("--query", "-q", help="Question to research")
    parser.add_argument("--model", "-m", help="Base model to use (default: from config)")
    parser.add_argument("--max-cycles", type=int, help="Cap on research cycles")
    parser.add_argument("--thoughts", action="store_true", help="Print model reasoning too")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API instead")

    args = parser.parse_args()

    if args.serve:
        import uvicorn

        uvicorn.run("agentflow.main:app", host=settings.host, port=settings.port)
        return
    if not args.query:
        parser.error("--query is required unless --serve is given")

    asyncio.run(run_agent(args.query, args.model, args.max_cycles, args.thoughts))


if __name__ == "__main__":
    main()
