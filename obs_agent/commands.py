from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .protocol import strip_data_uri

if TYPE_CHECKING:
    from .connection import Connection


@dataclass(frozen=True)
class ScreenshotOptions:
    source_name: str
    image_format: str = "png"
    image_width: int = 0
    image_height: int = 0
    quality: int = 80

    def request_data(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sourceName": self.source_name,
            "imageFormat": self.image_format,
            "imageCompressionQuality": self.quality,
        }
        # OBS rejects zero dimensions; omitting them keeps the source size.
        if self.image_width > 0:
            data["imageWidth"] = self.image_width
        if self.image_height > 0:
            data["imageHeight"] = self.image_height
        return data


class ObsCommands:
    """Thin request/response wrappers over the live session."""

    def __init__(self, connection: "Connection", *, timeout: float = 10.0) -> None:
        self._connection = connection
        self._timeout = timeout

    async def _call(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        session = self._connection.require_session()
        return await session.request(request_type, data, timeout=self._timeout)

    async def get_version(self) -> dict[str, Any]:
        return await self._call("GetVersion")

    async def get_scene_list(self) -> tuple[list[str], str | None]:
        data = await self._call("GetSceneList")
        names = [
            str(scene.get("sceneName"))
            for scene in data.get("scenes") or []
            if isinstance(scene, dict) and scene.get("sceneName") is not None
        ]
        return names, data.get("currentProgramSceneName")

    async def set_current_scene(self, scene_name: str) -> None:
        await self._call("SetCurrentProgramScene", {"sceneName": scene_name})

    async def start_recording(self) -> None:
        await self._call("StartRecord")

    async def stop_recording(self) -> str | None:
        data = await self._call("StopRecord")
        return data.get("outputPath")

    async def pause_recording(self) -> None:
        await self._call("PauseRecord")

    async def resume_recording(self) -> None:
        await self._call("ResumeRecord")

    async def start_streaming(self) -> None:
        await self._call("StartStream")

    async def stop_streaming(self) -> None:
        await self._call("StopStream")

    async def get_studio_mode(self) -> bool:
        data = await self._call("GetStudioModeEnabled")
        return bool(data.get("studioModeEnabled"))

    async def set_studio_mode(self, enabled: bool) -> None:
        await self._call("SetStudioModeEnabled", {"studioModeEnabled": bool(enabled)})

    async def take_source_screenshot(self, options: ScreenshotOptions) -> str:
        """Return the screenshot as bare base64 (the data-URI prefix is removed)."""
        data = await self._call("GetSourceScreenshot", options.request_data())
        image_data = data.get("imageData")
        if not isinstance(image_data, str) or not image_data:
            raise ValueError(f"GetSourceScreenshot returned no image for {options.source_name!r}")
        return strip_data_uri(image_data)
