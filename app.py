from __future__ import annotations

import ipaddress
import os
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv

# lib/ の設定値は import 時に os.getenv で読むので、先に .env を読み込む
_here = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(_here, ".env"))
load_dotenv(os.path.join(_here, ".env.local"), override=True)

import logging

from fastapi import (
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware

from lib.cache_manager import (
    COLLECTION_CACHE_TTL_S,
    CollectionManager,
    get_collection_manager,
)
from lib.traktor import compare_tracks
from lib.traktor.errors import (
    CollectionError,
    ConflictError,
    CorruptionError,
    InvalidOperationError,
    LockTimeoutError,
    NotFoundError,
)
from lib.traktor.matcher import DEFAULT_THRESHOLD
from lib.traktor.service import CollectionService
from lib.traktor.tree import ROOT_PATH, node_to_dict

# Basic logging configuration to ensure logger outputs appear in the terminal
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("uvicorn.error")
logger.setLevel(logging.INFO)


# =========================
# Pydantic models
# =========================

class NodeModel(BaseModel):
    name: str
    type: str
    path: str
    parent_path: Optional[str] = None
    depth: int
    playlist_size: Optional[int] = None
    children: Optional[List["NodeModel"]] = None


NodeModel.model_rebuild()


class CollectionStatsModel(BaseModel):
    playlist_count: int
    track_count: int


class SidebarResponse(BaseModel):
    stats: CollectionStatsModel
    tree: NodeModel


class UpdateCountResponse(BaseModel):
    updated_count: int


class SourceBody(BaseModel):
    source: str


class CreateFolderBody(BaseModel):
    parent_path: str = ROOT_PATH
    name: str


class CreatePlaylistBody(BaseModel):
    folder_path: str = ROOT_PATH
    name: str
    track_keys: Optional[List[str]] = None


class MoveBody(BaseModel):
    source_path: str
    target_folder_path: str


class MoveItem(BaseModel):
    source: str
    target: str


class MoveBatchBody(BaseModel):
    moves: List[MoveItem]


class DuplicateBody(BaseModel):
    source_path: str
    target_folder_path: str
    name: Optional[str] = None


class RenameBody(BaseModel):
    path: str
    new_name: str


class DeleteBody(BaseModel):
    paths: List[str]


class OrphansBody(BaseModel):
    target_folder_path: str = ROOT_PATH
    name: Optional[str] = None


class ReleaseCompanionBody(BaseModel):
    source_path: str
    target_folder_path: str
    name: Optional[str] = None


class TrackUpdateBody(BaseModel):
    key: str
    fields: Dict[str, Any]


class TrackBatchBody(BaseModel):
    updates: List[TrackUpdateBody]


class CommentsBatchBody(BaseModel):
    old_comments: List[str]
    new_comment: str = ""


class StyleTagBody(BaseModel):
    playlist_paths: List[str]
    tag: str


class MergeItem(BaseModel):
    master_key: str
    redundant_keys: List[str]


class MergeBody(BaseModel):
    merges: List[MergeItem]


class CompareBody(BaseModel):
    source_tracks: List[Dict[str, Any]]
    target_tracks: List[Dict[str, Any]]
    threshold_percent: int = Field(DEFAULT_THRESHOLD, ge=0, le=100)


class ComparePlaylistBody(BaseModel):
    playlist_path: str
    target_tracks: List[Dict[str, Any]]
    threshold_percent: int = Field(DEFAULT_THRESHOLD, ge=0, le=100)


# =========================
# FastAPI app & CORS
# =========================

app = FastAPI(
    title="Traktor Collection Engine",
    version="1.0.0",
)

# Add GZip middleware for response compression (sidebar / track lists get large)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# 最大アップロードサイズ（バイト） - デフォルト 100MB（NML 上限と合わせて）
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", 100 * 1024 * 1024))


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method in ("POST", "PUT", "PATCH"):
            content_length = request.headers.get("content-length")
            if content_length and int(content_length) > MAX_UPLOAD_SIZE + 1024 * 1024:
                logger.warning(f"[RequestSizeLimit] Rejected oversized request: {content_length} bytes from {request.client}")
                return JSONResponse(
                    status_code=413,
                    content={"detail": f"Request body too large (max {MAX_UPLOAD_SIZE} bytes)"}
                )
        return await call_next(request)


app.add_middleware(RequestSizeLimitMiddleware)

# デフォルトの許可オリジン
default_origins = [
    "http://localhost:3000",
]

# 環境変数 ALLOWED_ORIGINS があればそれを優先（カンマ区切り）
env_origins = os.getenv("ALLOWED_ORIGINS")
if env_origins:
    origins = [o.strip() for o in env_origins.split(",") if o.strip()]
else:
    origins = default_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _log_startup():
    logger.info("traktor-collection: startup event triggered")


# =========================
# Error mapping
# =========================

_STATUS_BY_ERROR = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidOperationError, 422),
    (LockTimeoutError, 503),
    (CorruptionError, 500),
]


@app.exception_handler(CollectionError)
async def _collection_error_handler(request: Request, exc: CollectionError):
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error(f"[api] {request.method} {request.url.path} failed: {exc} meta={exc.meta}")
    return JSONResponse(
        status_code=status,
        content={"detail": {
            "error": str(exc),
            "type": type(exc).__name__,
            "meta": exc.meta,
        }},
    )


# =========================
# Dependencies
# =========================

DEFAULT_USER_ID = os.getenv("DEFAULT_USER_ID", "local")
_USER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    user_id = (x_user_id or DEFAULT_USER_ID).strip()
    if not _USER_ID_RE.match(user_id):
        raise HTTPException(status_code=400, detail="X-User-Id は英数字・_・- のみ（64文字以内）")
    return user_id


def get_manager() -> CollectionManager:
    return get_collection_manager()


def get_service(
    user_id: str = Depends(get_user_id),
    manager: CollectionManager = Depends(get_manager),
) -> CollectionService:
    return manager.service_for(user_id)


# =========================
# Health check
# =========================

@app.get("/health", tags=["system"])
def health() -> Dict[str, Any]:
    return {
        "ok": True,
        "status": "ok",
        "build_commit": os.getenv("RENDER_GIT_COMMIT", "local")[:7],
    }


@app.get("/", tags=["system"])
def root() -> Dict[str, Any]:
    return {"ok": True, "status": "ok"}


# =========================
# Collection lifecycle
# =========================

@app.post("/api/collection/upload", response_model=CollectionStatsModel, tags=["collection"])
async def upload_collection(
    file: UploadFile = File(..., description="Traktor collection.nml"),
    user_id: str = Depends(get_user_id),
    manager: CollectionManager = Depends(get_manager),
):
    """
    collection.nml をアップロードしてメモリ上に展開する。
    以降の操作はこのユーザーのコレクションに対して行われる。
    """
    t0 = time.time()
    try:
        contents = await file.read()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"ファイル読み込みに失敗しました: {e}")

    if not contents:
        raise HTTPException(status_code=400, detail="空のファイルです。")
    if len(contents) > MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail=f"ファイルが大きすぎます（上限 {MAX_UPLOAD_SIZE} バイト）。")

    try:
        service = await run_in_threadpool(manager.set_from_memory, user_id, contents)
    except OverflowError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    stats = service.get_sidebar()["stats"]
    logger.info(
        f"[api/collection/upload] user={user_id} bytes={len(contents)} "
        f"tracks={stats['track_count']} playlists={stats['playlist_count']} "
        f"total_ms={(time.time() - t0) * 1000:.1f}"
    )
    return stats


# リモート NML の取得先。空なら公開ホストならどこでも可（カンマ区切り）
COLLECTION_SOURCE_HOSTS = {
    h.strip().lower() for h in os.getenv("COLLECTION_SOURCE_HOSTS", "").split(",") if h.strip()
}


def _validate_source_url(source: str) -> str:
    """
    Only public https URLs may become a source locator. Filesystem paths and
    memory handles are server-side only (uploads go through /upload).
    """
    s = (source or "").strip()
    parsed = urlparse(s)
    if parsed.scheme != "https":
        raise HTTPException(status_code=422, detail="Only https URLs are accepted as a collection source")

    host = (parsed.hostname or "").lower()
    if not host or host == "localhost" or host.endswith(".localhost"):
        raise HTTPException(status_code=422, detail=f"Unsupported URL host: {host or '(empty)'}")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None and not ip.is_global:
        raise HTTPException(status_code=422, detail=f"Unsupported URL host: {host}")
    if COLLECTION_SOURCE_HOSTS and host not in COLLECTION_SOURCE_HOSTS:
        raise HTTPException(status_code=422, detail=f"Unsupported URL host: {host}")
    return s


@app.post("/api/collection/source", response_model=CollectionStatsModel, tags=["collection"])
def load_collection_source(
    body: SourceBody,
    user_id: str = Depends(get_user_id),
    manager: CollectionManager = Depends(get_manager),
):
    """https の URL にある NML をこのユーザーのコレクションとして読み込む。"""
    source = _validate_source_url(body.source)
    try:
        service = manager.get_service(user_id, source)
    except httpx.HTTPError as e:
        raise HTTPException(status_code=502, detail=f"リモートの NML 取得に失敗しました: {e}")
    except OverflowError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return service.get_sidebar()["stats"]


@app.get("/api/collection/status", tags=["collection"])
def collection_status(
    user_id: str = Depends(get_user_id),
    manager: CollectionManager = Depends(get_manager),
) -> Dict[str, Any]:
    return {
        "loaded": manager.has_instance(user_id),
        "source": manager.source_of(user_id),
        "cache_ttl_s": COLLECTION_CACHE_TTL_S,
    }


@app.get("/api/collection/download", tags=["collection"])
def download_collection(service: CollectionService = Depends(get_service)):
    return Response(
        content=service.to_xml(),
        media_type="application/xml",
        headers={"Content-Disposition": 'attachment; filename="collection.nml"'},
    )


# =========================
# Reads
# =========================

@app.get("/api/collection/sidebar", response_model=SidebarResponse, tags=["collection"])
def get_sidebar(service: CollectionService = Depends(get_service)):
    return service.get_sidebar()


@app.get("/api/collection/node", response_model=NodeModel, tags=["collection"])
def get_node(
    path: str = Query(..., description="Node path, e.g. root/Folder/Playlist"),
    service: CollectionService = Depends(get_service),
):
    return node_to_dict(service.resolve(path), recursive=False)


@app.get("/api/collection/playlist-tracks", tags=["collection"])
def get_playlist_tracks(
    path: str = Query(..., description="Playlist path"),
    service: CollectionService = Depends(get_service),
) -> Dict[str, Any]:
    return service.get_playlist_tracks(path)


@app.get("/api/collection/tracks", tags=["tracks"])
def get_all_tracks(service: CollectionService = Depends(get_service)) -> Dict[str, Any]:
    tracks = service.all_tracks()
    return {"count": len(tracks), "tracks": tracks}


# =========================
# Tree mutations
# =========================

@app.post("/api/collection/folders", response_model=NodeModel, tags=["tree"])
def create_folder(body: CreateFolderBody, service: CollectionService = Depends(get_service)):
    return node_to_dict(service.create_folder(body.parent_path, body.name))


@app.post("/api/collection/playlists", response_model=NodeModel, tags=["tree"])
def create_playlist(body: CreatePlaylistBody, service: CollectionService = Depends(get_service)):
    if body.track_keys is None:
        playlist = service.create_playlist(body.folder_path, body.name)
    else:
        playlist = service.create_playlist_with_tracks(body.folder_path, body.name, body.track_keys)
    return node_to_dict(playlist)


@app.post("/api/collection/move", response_model=NodeModel, tags=["tree"])
def move_node(body: MoveBody, service: CollectionService = Depends(get_service)):
    return node_to_dict(service.move(body.source_path, body.target_folder_path), recursive=False)


@app.post("/api/collection/move-batch", tags=["tree"])
def move_nodes(body: MoveBatchBody, service: CollectionService = Depends(get_service)) -> Dict[str, Any]:
    moved = service.move_batch([item.model_dump() for item in body.moves])
    return {"moved": [node.path for node in moved]}


@app.post("/api/collection/duplicate", response_model=NodeModel, tags=["tree"])
def duplicate_playlist(body: DuplicateBody, service: CollectionService = Depends(get_service)):
    return node_to_dict(service.duplicate(body.source_path, body.target_folder_path, body.name))


@app.post("/api/collection/rename", response_model=NodeModel, tags=["tree"])
def rename_node(body: RenameBody, service: CollectionService = Depends(get_service)):
    return node_to_dict(service.rename(body.path, body.new_name), recursive=False)


@app.post("/api/collection/delete", tags=["tree"])
def delete_nodes(body: DeleteBody, service: CollectionService = Depends(get_service)) -> Dict[str, int]:
    return service.delete_nodes(body.paths)


# =========================
# Derived playlists
# =========================

@app.post("/api/collection/orphans", response_model=NodeModel, tags=["derived"])
def create_orphans_playlist(body: OrphansBody, service: CollectionService = Depends(get_service)):
    return node_to_dict(service.compute_orphans(body.target_folder_path, body.name))


@app.post("/api/collection/release-companion", response_model=NodeModel, tags=["derived"])
def create_release_companion(body: ReleaseCompanionBody, service: CollectionService = Depends(get_service)):
    playlist = service.compute_release_companion(body.source_path, body.target_folder_path, body.name)
    return node_to_dict(playlist)


# =========================
# Track mutations
# =========================

@app.patch("/api/collection/tracks", tags=["tracks"])
def update_track(body: TrackUpdateBody, service: CollectionService = Depends(get_service)) -> Dict[str, Any]:
    return service.update_track(body.key, body.fields).to_row()


@app.post("/api/collection/tracks/batch", tags=["tracks"])
def update_tracks_batch(body: TrackBatchBody, service: CollectionService = Depends(get_service)) -> Dict[str, Any]:
    return service.update_tracks_batch([u.model_dump() for u in body.updates])


@app.get("/api/collection/comments", tags=["comments"])
def classify_comments(service: CollectionService = Depends(get_service)) -> Dict[str, List[str]]:
    return service.classify_comments()


@app.post("/api/collection/comments/batch", response_model=UpdateCountResponse, tags=["comments"])
def update_comments_batch(body: CommentsBatchBody, service: CollectionService = Depends(get_service)):
    return service.update_comments_batch(body.old_comments, body.new_comment)


@app.get("/api/collection/tags", tags=["tags"])
def mine_tags(service: CollectionService = Depends(get_service)) -> Dict[str, Any]:
    return service.mine_tags()


@app.post("/api/collection/tags/preview", tags=["tags"])
def preview_style_tag(body: StyleTagBody, service: CollectionService = Depends(get_service)) -> Dict[str, int]:
    return service.tag_count_preview(body.playlist_paths, body.tag)


@app.post("/api/collection/tags/apply", response_model=UpdateCountResponse, tags=["tags"])
def apply_style_tag(body: StyleTagBody, service: CollectionService = Depends(get_service)):
    return service.write_style_tag(body.playlist_paths, body.tag)


# =========================
# Duplicates
# =========================

@app.get("/api/collection/duplicates", tags=["duplicates"])
def find_duplicates(
    match_by: str = Query("artist-title", description="artist-title or title-only"),
    min_group_size: int = Query(2, ge=2),
    service: CollectionService = Depends(get_service),
) -> Dict[str, Any]:
    groups = service.find_duplicates(match_by, min_group_size)
    return {"count": len(groups), "groups": groups}


@app.post("/api/collection/duplicates/merge", tags=["duplicates"])
def merge_duplicates(body: MergeBody, service: CollectionService = Depends(get_service)) -> Dict[str, int]:
    return service.merge_duplicates([m.model_dump() for m in body.merges])


# =========================
# Reconciliation
# =========================

@app.post("/api/compare", tags=["match"])
def compare(body: CompareBody) -> Dict[str, Any]:
    """2つのトラックリストを突き合わせる（コレクション不要）。"""
    return compare_tracks(body.source_tracks, body.target_tracks, body.threshold_percent)


@app.post("/api/collection/compare-playlist", tags=["match"])
def compare_playlist(
    body: ComparePlaylistBody,
    service: CollectionService = Depends(get_service),
) -> Dict[str, Any]:
    """Traktor のプレイリストを外部ライブラリのトラック一覧と突き合わせる。"""
    playlist = service.get_playlist_tracks(body.playlist_path)
    return compare_tracks(playlist["tracks"], body.target_tracks, body.threshold_percent)


# =========================
# Local dev entrypoint
# =========================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
    )
