#!/usr/bin/env python3
"""
Development server runner for the QueryPilot API.

Starts the FastAPI development server with hot reloading after loading
variables from the project's .env file.
"""

import sys
from pathlib import Path

# Add the src directory to the Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"
sys.path.insert(0, str(src_path))

from dotenv import load_dotenv

env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)
    print(f"✓ Loaded environment variables from {env_file}")
else:
    print(f"⚠ No .env file found at {env_file}")
    print("  DATABASE__DATABASE_URL and LLM__OPENROUTER_API_KEY must be set in the environment")

if __name__ == "__main__":
    import uvicorn
    from querypilot.config import get_settings

    settings = get_settings()
    server_config = settings.server

    print("🚀 Starting QueryPilot API development server...")
    print(f"📊 API Documentation: http://{server_config.host}:{server_config.port}/docs")
    print(f"🔍 Health Check: http://{server_config.host}:{server_config.port}/health")
    print(f"⚙️  Server: {server_config.app_module} on {server_config.host}:{server_config.port}")
    print(f"🧭 Decision strategy: {settings.orchestrator.decision_strategy.value}")
    print()

    uvicorn.run(
        server_config.app_module,
        host=server_config.host,
        port=server_config.port,
        reload=server_config.reload,
        reload_dirs=[str(src_path)],
        log_config=None,  # Use our structured logging
        access_log=False,  # Access logging happens in middleware
    )
