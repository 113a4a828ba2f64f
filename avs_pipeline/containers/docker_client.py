"""Async client for the Docker Engine REST API.

Talks to the local daemon over its unix socket (or TCP when DOCKER_HOST
says so) with httpx. Covers only what sidecar supervision needs: image
pulls, container create/start/inspect/remove and the service network.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from avs_pipeline.core.config import DockerConfig
from avs_pipeline.core.exceptions import DockerAPIError

logger = logging.getLogger("avs.containers.docker")


def split_image_ref(image_ref: str) -> tuple[str, Optional[str]]:
    """Split ``repo[:tag]`` into ``(repo, tag)``. Digests stay on the repo part."""
    if "@" in image_ref:
        return image_ref, None
    name = image_ref.rsplit("/", 1)[-1]
    if ":" in name:
        repo, tag = image_ref.rsplit(":", 1)
        return repo, tag
    return image_ref, "latest"


def _transport_for(host: str) -> tuple[Optional[httpx.AsyncBaseTransport], str]:
    parsed = urlparse(host)
    if parsed.scheme == "unix":
        return httpx.AsyncHTTPTransport(uds=parsed.path), "http://docker"
    if parsed.scheme == "tcp":
        return None, f"http://{parsed.netloc}"
    if parsed.scheme in ("http", "https"):
        return None, host.rstrip("/")
    raise DockerAPIError(f"Unsupported DOCKER_HOST: {host}")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text


class DockerEngineClient:
    """Thin async wrapper over the Engine API endpoints used by the manager.

    Safe for concurrent use: the only state is the underlying httpx client.
    """

    def __init__(
        self,
        config: Optional[DockerConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or DockerConfig()
        self._prefix = f"/{self.config.api_version.strip('/')}" if self.config.api_version else ""
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            transport, base_url = _transport_for(self.config.host)
            self._client = httpx.AsyncClient(
                transport=transport,
                base_url=base_url,
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    async def __aenter__(self) -> DockerEngineClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _path(self, path: str) -> str:
        return f"{self._prefix}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        ok: tuple[int, ...] = (200,),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self.client.request(method, self._path(path), **kwargs)
        except httpx.HTTPError as e:
            raise DockerAPIError(f"Docker daemon request {method} {path} failed: {e}") from e
        if response.status_code not in ok:
            raise DockerAPIError(
                f"{method} {path}: HTTP {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    async def ping(self) -> bool:
        response = await self._request("GET", "/_ping")
        return response.text.strip() == "OK"

    async def pull_image(self, image_ref: str) -> int:
        """Pull an image and drain its progress stream.

        Returns the number of progress messages seen. Raises DockerAPIError if
        the daemon reports an error inline or the stream ends abnormally.
        """
        repo, tag = split_image_ref(image_ref)
        params = {"fromImage": repo}
        if tag:
            params["tag"] = tag

        messages = 0
        try:
            async with self.client.stream(
                "POST",
                self._path("/images/create"),
                params=params,
                timeout=httpx.Timeout(self.config.timeout_seconds, read=None),
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise DockerAPIError(
                        f"Pull of {image_ref} rejected: HTTP {response.status_code}: "
                        f"{_error_message(response)}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        progress = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise DockerAPIError(f"Malformed pull progress for {image_ref}: {line!r}") from e
                    if not isinstance(progress, dict):
                        raise DockerAPIError(f"Malformed pull progress for {image_ref}: {line!r}")
                    if progress.get("error"):
                        raise DockerAPIError(f"Pull of {image_ref} failed: {progress['error']}")
                    messages += 1
                    logger.debug("pull %s: %s", image_ref, progress.get("status", ""))
        except httpx.HTTPError as e:
            raise DockerAPIError(f"Pull of {image_ref} interrupted: {e}") from e

        if messages == 0:
            raise DockerAPIError(f"Pull of {image_ref} produced no progress")
        return messages

    async def create_container(self, name: str, spec: dict[str, Any]) -> str:
        response = await self._request(
            "POST", "/containers/create", ok=(201,), params={"name": name}, json=spec
        )
        try:
            data = response.json()
        except ValueError as e:
            raise DockerAPIError(f"Create of {name} returned a non-JSON body") from e
        if not isinstance(data, dict) or not data.get("Id"):
            raise DockerAPIError(f"Create of {name} returned no container id")
        for warning in data.get("Warnings") or []:
            logger.warning("create %s: %s", name, warning)
        return data["Id"]

    async def start_container(self, container_id: str) -> None:
        # 304: already started
        await self._request("POST", f"/containers/{container_id}/start", ok=(204, 304))

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/containers/{container_id}/json")
        try:
            info = response.json()
        except ValueError as e:
            raise DockerAPIError(f"Inspect of {container_id} returned a non-JSON body") from e
        if not isinstance(info, dict):
            raise DockerAPIError(f"Inspect of {container_id} returned {type(info).__name__}, expected an object")
        return info

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            ok=(204,),
            params={"force": "true" if force else "false"},
        )

    async def network_exists(self, name: str) -> bool:
        try:
            await self._request("GET", f"/networks/{name}")
        except DockerAPIError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def create_network(self, name: str, driver: str = "bridge") -> str:
        response = await self._request(
            "POST",
            "/networks/create",
            ok=(201,),
            json={"Name": name, "Driver": driver, "CheckDuplicate": True},
        )
        return response.json().get("Id", "")
