"""
HTTP registration collaborator.

Some deployments register services through an HTTP endpoint rather than over
the UDP socket. The announcement body is the same ``{name: definition}``
document either way.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import aiohttp
from loguru import logger

from iotscape.core.definition import ServiceIdentity
from iotscape.core.errors import RegistrationError
from iotscape.datastructures.type_aliases import UrlString

SUCCESS_STATUSES = frozenset({200, 201, 204})


@dataclass(frozen=True, slots=True)
class HttpAnnouncer:
    """POSTs the announcement body to a registration URL."""

    timeout: float = 10.0

    async def announce_async(self, identity: ServiceIdentity, server_url: UrlString) -> None:
        """Register ``identity``; raises ``RegistrationError`` on any failure."""
        body = identity.announcement()
        try:
            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    server_url,
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response,
            ):
                if response.status not in SUCCESS_STATUSES:
                    detail = await response.text()
                    raise RegistrationError(
                        f"HTTP announce to {server_url} failed with status "
                        f"{response.status}: {detail[:200]}"
                    )
        except (aiohttp.ClientError, TimeoutError) as e:
            raise RegistrationError(f"HTTP announce to {server_url} failed: {e}") from e

        logger.info(
            "Announced {} ({}) via HTTP", identity.service_type, identity.instance_id
        )

    def announce(self, identity: ServiceIdentity, server_url: UrlString) -> None:
        """Blocking form for the threaded runtime (must not run inside a loop)."""
        asyncio.run(self.announce_async(identity, server_url))
