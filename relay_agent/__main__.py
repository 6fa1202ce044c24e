"""Entry point for running relay-agent as a module: python -m relay_agent"""

from relay_agent.cli.commands import app

if __name__ == "__main__":
    app()
