"""
Process entry point: `python main.py` starts the engine under uvicorn.
"""

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(
        "irrigation.main:app",
        host=os.getenv("IRRIGATION_HOST", "0.0.0.0"),
        port=int(os.getenv("IRRIGATION_PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
