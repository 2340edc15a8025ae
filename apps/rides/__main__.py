"""
Run the MedRide marketplace API with uvicorn.

Example:
  python -m apps.rides --reload
"""
import os

import uvicorn


def main() -> None:
    reload = os.getenv("MEDRIDE_RELOAD", "false").lower() == "true"
    uvicorn.run(
        "apps.rides.app.main:app",
        host=os.getenv("MEDRIDE_HOST", "0.0.0.0"),
        port=int(os.getenv("MEDRIDE_PORT", "8080")),
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
