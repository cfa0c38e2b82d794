"""
main.py: Server launcher and entry point.

Run this file to start the allocation API:

    python main.py

The operator dashboard is a separate Streamlit process:

    streamlit run dashboard/app.py

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import os

import uvicorn


HOST = os.environ.get("FLEETSLOT_HOST", "127.0.0.1")
PORT = int(os.environ.get("FLEETSLOT_PORT", "8000"))


def main() -> None:
    """Start the allocation API server."""
    print("=" * 60)
    print("  FleetSlot: Material Slot Allocation Engine")
    print("=" * 60)
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  API docs : http://{HOST}:{PORT}/docs")
    print("  Dashboard: streamlit run dashboard/app.py")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # reload would spawn a second process and a second reclamation scheduler
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
