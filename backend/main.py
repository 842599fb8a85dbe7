"""
FastAPI backend for the Chrome History Generator.
Runs a generation from the configured URL lists and hands back the spoofed
History and Favicons databases.
"""

from __future__ import annotations

import csv
import dataclasses
import io
import os
import random
import tempfile
import zipfile
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from backend.generate import GeneratorConfig, RunSummary, generate
from backend.history import GeneratorError

app = FastAPI(
    title="Chrome History Generator",
    description="Generate fake Chrome History and Favicons databases from URL lists",
    version="1.0.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def run_generation(days: float, count: int, seed: int, output_dir: str) -> RunSummary:
    try:
        config = dataclasses.replace(
            GeneratorConfig.from_env(),
            days_back_to_add=days,
            number_of_urls=count,
            output_dir=output_dir,
        )
        return generate(config, rng=random.Random(seed))
    except (GeneratorError, csv.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    return {"message": "Chrome History Generator API", "docs": "/docs"}


@app.get("/api/generate")
def generate_history_files(
    days: float = Query(default=7, gt=0, le=365, description="Maximum age of generated visits, in days"),
    count: int = Query(default=10, ge=1, le=1000, description="Number of URLs to add"),
    seed: Optional[int] = Query(default=None, description="Random seed for reproducibility"),
):
    """Generate and download a zip holding the History and Favicons databases."""

    if seed is None:
        seed = random.randint(1, 999999)

    with tempfile.TemporaryDirectory(prefix="histgen-") as tmp_dir:
        summary = run_generation(days, count, seed, tmp_dir)

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in (summary.paths.history, summary.paths.favicons):
                zf.write(path, arcname=os.path.basename(path))
        buf.seek(0)

    return StreamingResponse(
        buf,
        media_type="application/zip",
        headers={
            "Content-Disposition": "attachment; filename=chrome-profile.zip",
            "X-Seed": str(seed),
            "X-Urls": str(summary.history_added),
            "X-Favicons": str(summary.mappings_added),
        },
    )


@app.get("/api/preview")
def preview_history(
    days: float = Query(default=7, gt=0, le=365, description="Maximum age of generated visits, in days"),
    count: int = Query(default=10, ge=1, le=200, description="Number of URLs to add"),
    seed: Optional[int] = Query(default=None, description="Random seed"),
):
    """Run a generation and report what was written, without downloading."""

    if seed is None:
        seed = random.randint(1, 999999)

    with tempfile.TemporaryDirectory(prefix="histgen-") as tmp_dir:
        summary = run_generation(days, count, seed, tmp_dir)

    result = summary.to_dict()
    del result["history"], result["favicons"]
    return {
        "seed": seed,
        "days": days,
        "preview": [dataclasses.asdict(e) for e in summary.entries],
        **result,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
