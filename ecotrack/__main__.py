"""Run the API with uvicorn: ``python -m ecotrack``."""

import uvicorn


def main() -> None:
    uvicorn.run("ecotrack.app:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
