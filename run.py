#!/usr/bin/env python3
"""
Simple run script for PhaseFlow.

Usage:
    python run.py

Or with custom settings:
    HOST=127.0.0.1 PORT=8080 PROJECT_ROOT=./project python run.py
"""

import uvicorn
import os


def main():
    """Run the FastAPI application."""
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "false").lower() == "true"

    print(f"""
PhaseFlow - workflow execution engine
  Server:    http://{host}:{port}
  API Docs:  http://{host}:{port}/docs
  ReDoc:     http://{host}:{port}/redoc
  Events:    ws://{host}:{port}/ws/instances/{{instance_id}}
  Demo workflows: article-pipeline, greeting
    """)

    uvicorn.run(
        "phaseflow.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
