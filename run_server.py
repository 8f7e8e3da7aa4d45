"""Convenience launcher: python run_server.py
Runs the API from the repository root so ``backend.app`` resolves.
HOST / PORT env override the bind address.
"""
import os

from backend.app.main import app  # type: ignore

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
