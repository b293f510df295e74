"""Adapter that delegates each operation to an external command.

The command is invoked as `<command...> <operation>` with a JSON request on
stdin and must print a JSON object on stdout:

    create:  {"context": {...}, "attributes": {...}}
          -> {"id": "...", "attributes": {...}}
    read:    {"context": {...}, "id": "..."}          -> {"attributes": {...}}
    update:  {"context": {...}, "id": "...", "attributes": {...}}
          -> {"attributes": {...}}
    delete:  {"context": {...}, "id": "..."}          -> {} (output ignored)

Exit codes: 0 success, 75 (EX_TEMPFAIL) transient failure, 3 not found
(read/delete), anything else a permanent failure.
"""

import json
import logging
import os
from dataclasses import dataclass, field

from common import RC_TIMEOUT, run_command
from providers.base import NotFoundError, ProviderContext, ProviderError

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 3
EXIT_TEMPFAIL = 75


@dataclass
class CommandProvider:
    """Run an external program per provider operation."""
    kind: str
    command: list[str]
    timeout: int = 600
    env: dict = field(default_factory=dict)

    def _invoke(self, operation: str, payload: dict) -> dict:
        cmd = list(self.command) + [operation]
        env = None
        if self.env:
            env = dict(os.environ)
            env.update(self.env)

        rc, out, err = run_command(
            cmd,
            timeout=self.timeout,
            env=env,
            input_data=json.dumps(payload),
        )
        if rc == 0:
            if not out.strip():
                return {}
            try:
                data = json.loads(out)
            except json.JSONDecodeError as e:
                raise ProviderError(f"{self.kind} {operation}: invalid JSON output: {e}")
            if not isinstance(data, dict):
                raise ProviderError(f"{self.kind} {operation}: output must be a JSON object")
            return data

        message = f"{self.kind} {operation} failed (rc={rc}): {err.strip() or out.strip()}"
        if rc == EXIT_NOT_FOUND and operation in ('read', 'delete'):
            raise NotFoundError(message)
        if rc in (EXIT_TEMPFAIL, RC_TIMEOUT):
            raise ProviderError(message, transient=True)
        raise ProviderError(message)

    def create(self, context: ProviderContext, attributes: dict) -> tuple[dict, str]:
        data = self._invoke('create', {'context': context.to_dict(), 'attributes': attributes})
        if 'id' not in data:
            raise ProviderError(f"{self.kind} create: output is missing 'id'")
        return data.get('attributes', {}), str(data['id'])

    def read(self, context: ProviderContext, provider_id: str) -> dict:
        data = self._invoke('read', {'context': context.to_dict(), 'id': provider_id})
        return data.get('attributes', {})

    def update(self, context: ProviderContext, provider_id: str, attributes: dict) -> dict:
        data = self._invoke('update', {
            'context': context.to_dict(),
            'id': provider_id,
            'attributes': attributes,
        })
        return data.get('attributes', {})

    def delete(self, context: ProviderContext, provider_id: str) -> None:
        try:
            self._invoke('delete', {'context': context.to_dict(), 'id': provider_id})
        except NotFoundError:
            logger.info(f"{self.kind} {provider_id} already absent")
