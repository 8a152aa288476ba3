from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from app.api.deps import get_storage
from app.services.storage import LocalStorage, StoragePathError

router = APIRouter(tags=["files"])


@router.get("/{file_path:path}")
async def read_generated_file(
    file_path: str,
    storage: LocalStorage = Depends(get_storage),
) -> FileResponse:
    try:
        path = storage.path_for(file_path)
    except StoragePathError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="File not found"
        ) from exc
    if not path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="File not found"
        )
    return FileResponse(path, filename=path.name, content_disposition_type="inline")
