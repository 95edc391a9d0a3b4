#!/usr/bin/env python3
"""
Startup script for the voice orchestration service and the conversation history service.
"""

import os
import sys
import argparse
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv(project_root / ".env")

from voice_orchestration.config import get_settings
from voice_orchestration.logging_conf import configure_logging

SERVICES = {
    "voice": "voice_orchestration.webhook_server:create_app",
    "history": "voice_orchestration.services.history_service:create_history_app",
}


def check_environment(service: str):
    """Check environment variables"""
    required_vars = {
        "voice": ['GCP_PROJECT_ID', 'DIALOGFLOW_AGENT_ID'],
        "history": ['SUPABASE_URL', 'SUPABASE_KEY'],
    }[service]
    optional_vars = {
        "voice": ['OPENAI_API_KEY', 'SUPABASE_URL', 'HISTORY_SERVICE_URL', 'TWILIO_AUTH_TOKEN'],
        "history": [],
    }[service]

    missing_vars = [var for var in required_vars if not os.getenv(var)]
    if missing_vars:
        print(f"⚠️  Missing required environment variables: {', '.join(missing_vars)}")
        print("Set them in your .env file or environment")
    else:
        print("✅ All required environment variables are set")

    for var in optional_vars:
        if not os.getenv(var):
            print(f"ℹ️  Optional variable {var} not set")

    public_url = os.getenv('PUBLIC_BASE_URL', '')
    if public_url and not public_url.startswith('https://'):
        print(f"⚠️  PUBLIC_BASE_URL should start with https:// (current: {public_url})")


def start_service(service: str, host: str, port: int, reload: bool = False, log_level: str = "info"):
    import uvicorn

    print(f"🚀 Starting {service} service on {host}:{port}")
    if service == "voice":
        print(f"📞 Twilio webhook URL: http://{host}:{port}{get_settings().VOICE_ENDPOINT}")
    else:
        print(f"🗄️  Transcript ingestion: http://{host}:{port}/save-transcript")
    print(f"📊 Health check: http://{host}:{port}/health")

    uvicorn.run(
        SERVICES[service],
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
        # Keep the handlers installed by configure_logging
        log_config=None,
    )


def main():
    """Main entry point"""
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Start the voice orchestration services")
    parser.add_argument("--service", choices=sorted(SERVICES), default="voice")
    parser.add_argument("--host", default=settings.SERVER_HOST, help="Host to bind to")
    parser.add_argument("--port", type=int, default=settings.SERVER_PORT, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--check-only", action="store_true", help="Only check the environment and exit")

    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    print("🔧 Checking environment...")
    check_environment(args.service)

    if args.check_only:
        return

    start_service(args.service, args.host, args.port, args.reload, settings.LOG_LEVEL)


if __name__ == "__main__":
    main()
