#!/usr/bin/env python3
"""
Server startup wrapper for roomkeeper.
"""
import os
import sys

import uvicorn


def main() -> None:
    port = int(os.getenv("PORT", "8000"))
    print(f"[roomkeeper] Server: http://localhost:{port}")
    try:
        uvicorn.run(
            "roomkeeper.main:app",
            host="0.0.0.0",
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[roomkeeper] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
