#!/usr/bin/env python3
"""
Run the cross-sell backend locally with uvicorn.
"""
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 5000))
    reload = os.getenv("NODE_ENV", "development") == "development"
    db = "postgres" if os.getenv("DATABASE_URL") or os.getenv("INSTANCE_UNIX_SOCKET") else "in-memory sqlite"

    print(f"🚀 Starting cross-sell backend on {host}:{port}")
    print(f"📊 Environment: {os.getenv('NODE_ENV', 'development')} (database: {db})")
    print(f"🤖 LLM generation: {'ON' if os.getenv('DEEPSEEK_API_KEY') or os.getenv('OPENAI_API_KEY') else 'OFF (fallback picks)'}")
    print(f"📖 API Documentation: http://{host}:{port}/api/docs")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="debug" if reload else "info",
        timeout_keep_alive=int(os.getenv("KEEP_ALIVE_TIMEOUT_S", "2100")),
    )
