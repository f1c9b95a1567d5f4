"""
Photo Sorter — Web UI (FastAPI).

Run:
    python server.py
    # or: uvicorn server:app --reload --port 3000

Environment: PHOTO_SORTER_ROOT, PHOTO_SORTER_DB, PHOTO_SORTER_THUMBNAILS,
PHOTO_SORTER_HOST, PHOTO_SORTER_PORT, PHOTO_SORTER_SORTED_PROBABILITY.
"""

from __future__ import annotations

import asyncio
import sys
import traceback
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import (
    FileResponse,
    HTMLResponse,
    JSONResponse,
    Response,
)
from fastapi.templating import Jinja2Templates

from photo_sorter import (
    DISLIKE,
    LIKE,
    FolderAggregate,
    PhotoLibrary,
    compute_folder_aggregates,
    folder_images,
    folder_rankings_csv,
    load_settings,
    normalize_folder,
    parse_rating,
    rank_folders,
)
from photo_types import (
    IndexIOError,
    InvalidLocation,
    InvalidPath,
    InvalidRating,
    Location,
    MoveFailed,
    NoPhotosAvailable,
    OriginalNotFound,
    PhotoNotFound,
    PhotoSorterError,
    ThumbnailGenerationFailed,
    UnknownLocation,
    validate_relative_path,
)
from thumbnails import ThumbnailCache

# ---------------------------------------------------------------------------
# Library + thumbnail cache (replaced wholesale by tests)
# ---------------------------------------------------------------------------

settings = load_settings()
library = PhotoLibrary(settings)
thumbnails = ThumbnailCache(settings.root, settings.thumbnail_dir)


async def _startup_reconcile() -> None:
    try:
        await library.reconcile()
    except asyncio.CancelledError:
        raise
    except Exception:
        traceback.print_exc()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Serve the existing index right away and reconcile it in the background."""
    print(f"[server] Photo root: {library.root.resolve()}")
    startup = asyncio.create_task(_startup_reconcile())
    yield
    startup.cancel()
    await library.stop_reconcile()
    await thumbnails.close()


app = FastAPI(title="Photo Sorter", lifespan=lifespan)
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

_STATUS_FOR_ERROR: dict[type[PhotoSorterError], int] = {
    NoPhotosAvailable: 500,
    PhotoNotFound: 404,
    OriginalNotFound: 404,
    InvalidRating: 400,
    InvalidPath: 400,
    InvalidLocation: 400,
    UnknownLocation: 404,
    MoveFailed: 500,
    ThumbnailGenerationFailed: 500,
    IndexIOError: 500,
}


@app.exception_handler(PhotoSorterError)
async def photo_sorter_error(_request: Request, exc: PhotoSorterError):
    status = _STATUS_FOR_ERROR.get(type(exc), 500)
    return JSONResponse({"error": str(exc)}, status_code=status)


# ---------------------------------------------------------------------------
# Routes — Pages
# ---------------------------------------------------------------------------


@app.get("/", response_class=HTMLResponse)
async def index(request: Request):
    return templates.TemplateResponse(request, "index.html", {})


# ---------------------------------------------------------------------------
# Routes — Triage
# ---------------------------------------------------------------------------


@app.get("/random-photo")
async def random_photo():
    path, location = await library.select_next()
    return JSONResponse(
        {"photo": path, "directory": location.directory, "location": str(location)}
    )


async def _rate(request: Request, action=None):
    """Shared body of /like, /dislike and /rate."""
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    photo = data.get("photo")
    directory = data.get("directory")
    if not photo or directory is None:
        return JSONResponse({"error": "Missing photo or directory"}, status_code=400)
    if action is None:
        if data.get("rating") is None:
            return JSONResponse({"error": "Missing rating"}, status_code=400)
        action = parse_rating(data["rating"])

    photo = validate_relative_path(photo)
    current = Location.parse(directory)
    new_location = await library.apply_rating(photo, current, action)

    if new_location != current:
        try:
            thumbnails.discard(current.qualify(photo))
        except OSError as e:
            print(f"[thumb] Cannot remove stale thumbnail for {photo}: {e}", file=sys.stderr)

    return JSONResponse(
        {
            "ok": True,
            "photo": photo,
            "directory": new_location.directory,
            "location": str(new_location),
        }
    )


@app.post("/like")
async def like(request: Request):
    return await _rate(request, LIKE)


@app.post("/dislike")
async def dislike(request: Request):
    return await _rate(request, DISLIKE)


@app.post("/rate")
async def rate(request: Request):
    return await _rate(request)


# ---------------------------------------------------------------------------
# Routes — Index and folder rollups
# ---------------------------------------------------------------------------


async def _ranked_folders() -> list[FolderAggregate]:
    records = await library.records()
    aggregates = compute_folder_aggregates(records, library.settings.max_depth)
    return rank_folders(aggregates.values())


@app.get("/refresh-cache")
async def refresh_cache():
    """Run (or join) a reconciliation pass and report the result."""
    result = await library.reconcile()
    folders = await _ranked_folders()
    return JSONResponse({**result, "folders": [a.to_dict() for a in folders]})


@app.get("/folder-ranks")
async def folder_ranks():
    folders = await _ranked_folders()
    return JSONResponse({"folders": [a.to_dict() for a in folders]})


@app.get("/download-folder-rankings")
async def download_folder_rankings():
    folders = await _ranked_folders()
    return Response(
        content=folder_rankings_csv(folders),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="folder-rankings.csv"'},
    )


@app.get("/api/folder-ratings")
async def folder_ratings(folder: str = ""):
    name = normalize_folder(folder)
    records = await library.records()
    aggregates = compute_folder_aggregates(records, library.settings.max_depth)
    agg = aggregates.get(name) or FolderAggregate(name)
    return JSONResponse(agg.to_dict())


@app.get("/api/folder-images")
async def list_folder_images(folder: str = "", limit: int = Query(50, ge=1)):
    records = await library.records()
    images, total = folder_images(records, folder, limit=limit)
    return JSONResponse(
        {"folder": normalize_folder(folder), "images": images, "total": total}
    )


@app.get("/api/folder-images-recursive")
async def list_folder_images_recursive(folder: str = "", limit: int = Query(50, ge=1)):
    records = await library.records()
    images, total = folder_images(records, folder, recursive=True, limit=limit)
    return JSONResponse(
        {"folder": normalize_folder(folder), "images": images, "total": total}
    )


@app.get("/api/folder-has-images")
async def folder_has_images(folder: str = ""):
    records = await library.records()
    _, total = folder_images(records, folder, recursive=True, limit=0)
    return JSONResponse(
        {"folder": normalize_folder(folder), "has_images": total > 0, "count": total}
    )


# ---------------------------------------------------------------------------
# Image serving
# ---------------------------------------------------------------------------


@app.get("/thumbnail/{path:path}")
async def serve_thumbnail(path: str):
    thumb = await thumbnails.get(path)
    return FileResponse(
        thumb,
        media_type="image/jpeg",
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


@app.get("/photos/{path:path}")
async def serve_photo(path: str):
    file_path = library.root / validate_relative_path(path)
    if not await asyncio.to_thread(file_path.is_file):
        return JSONResponse({"error": "File not found"}, status_code=404)
    return FileResponse(file_path)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run("server:app", host=settings.host, port=settings.port, reload=True)
