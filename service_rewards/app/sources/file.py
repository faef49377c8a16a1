"""
File-backed policy source (YAML or JSON).
"""

import json
from pathlib import Path
from typing import List, Optional, Union

import yaml

from shared.errors import PolicyValidationError
from shared.logging import get_logger
from ..policies.definitions import PolicyDocument, validate_policy
from ..policies.models import Policy
from .memory import InMemoryPolicySource


class FilePolicySource:
    """Loads policy definitions from a document on disk.

    The document is either a list of policy definitions or a mapping with a
    ``policies`` key. A file may list several versions of the same policy;
    they are published in version order so history is preserved.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = get_logger("rewards.sources.file")
        self._store = InMemoryPolicySource()
        self.reload()

    def reload(self) -> int:
        """Re-read the file and replace the in-memory store."""
        policies = self._load(self.path)
        store = InMemoryPolicySource()
        for policy in sorted(policies, key=lambda p: (p.policy_id, p.version)):
            store.publish(policy)
        self._store = store

        self.logger.info("Policies loaded", path=str(self.path), count=len(policies))
        return len(policies)

    async def list_active_policies(self, tenant_id: str, event_type: str) -> List[Policy]:
        return await self._store.list_active_policies(tenant_id, event_type)

    async def get_policy_version(self, policy_id: str, version: int) -> Optional[Policy]:
        return await self._store.get_policy_version(policy_id, version)

    @staticmethod
    def _load(path: Path) -> List[Policy]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PolicyValidationError("Policy file unreadable", details={"path": str(path), "error": str(e)}) from e

        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (ValueError, yaml.YAMLError) as e:
            raise PolicyValidationError("Policy file is not valid YAML/JSON", details={"path": str(path), "error": str(e)}) from e

        if data is None:
            return []
        if isinstance(data, list):
            data = {"policies": data}

        try:
            document = PolicyDocument.model_validate(data)
        except ValueError as e:
            raise PolicyValidationError("Invalid policy document", details={"path": str(path), "error": str(e)}) from e

        return [validate_policy(definition.to_policy()) for definition in document.policies]
