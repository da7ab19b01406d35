"""Kubeconfig credential store.

Cluster credentials are passed between stages as an explicit value instead of
being written into the ambient environment. Each operation returns a new
store; nothing touches disk until :meth:`CredentialStore.save`.

The file is edited with ruamel.yaml so comments and unrelated contexts
survive a merge.
"""

import copy
import io
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import YAMLError

from k3d_pipeline.exceptions import ConfigurationError
from k3d_pipeline.logging_config import get_logger

logger = get_logger(__name__)

SECTIONS = ("clusters", "contexts", "users")


def _yaml() -> YAML:
    yaml = YAML()
    yaml.preserve_quotes = True
    yaml.default_flow_style = False
    yaml.indent(mapping=2, sequence=2, offset=0)
    return yaml


def _empty_document() -> CommentedMap:
    doc = CommentedMap()
    doc["apiVersion"] = "v1"
    doc["kind"] = "Config"
    doc["preferences"] = CommentedMap()
    for section in SECTIONS:
        doc[section] = CommentedSeq()
    doc["current-context"] = ""
    return doc


def _with_host(server: str, host: str, port: int | None = None) -> str:
    parts = urlsplit(server)
    port = port or parts.port
    netloc = f"{host}:{port}" if port else host
    return urlunsplit(parts._replace(netloc=netloc))


@dataclass(frozen=True)
class CredentialStore:
    """A kubeconfig document and the file it belongs to."""

    path: Path
    document: CommentedMap = field(default_factory=_empty_document, compare=False)

    @classmethod
    def load(cls, path: str | Path) -> "CredentialStore":
        """Read a kubeconfig file; a missing or empty file yields an empty store.

        Raises:
            ConfigurationError: If the file is not valid YAML
        """
        path = Path(path).expanduser()
        if not path.exists() or not path.read_text().strip():
            return cls(path=path)
        try:
            with open(path) as f:
                document = _yaml().load(f)
        except YAMLError as e:
            raise ConfigurationError(f"Failed to read kubeconfig: {path}", str(e))
        if not isinstance(document, dict):
            raise ConfigurationError(f"Kubeconfig is not a mapping: {path}")
        for section in SECTIONS:
            if document.get(section) is None:
                document[section] = CommentedSeq()
        return cls(path=path, document=document)

    @property
    def current_context(self) -> str | None:
        return self.document.get("current-context") or None

    def contexts(self) -> list[str]:
        return [entry["name"] for entry in self.document.get("contexts") or []]

    def has_context(self, name: str) -> bool:
        return name in self.contexts()

    def merge(
        self,
        kubeconfig: str,
        switch_context: bool = True,
        server: str | None = None,
        server_port: int | None = None,
    ) -> "CredentialStore":
        """Merge another kubeconfig's clusters, contexts and users by name.

        Args:
            kubeconfig: Kubeconfig YAML text, e.g. from `k3d kubeconfig get`
            switch_context: Make the incoming current context active
            server: Host to put in merged cluster server URLs, replacing
                the loopback address k3d writes
            server_port: Port to put in merged server URLs, replacing the
                host port k3d picked

        Returns:
            A new CredentialStore
        """
        incoming = _yaml().load(kubeconfig) or {}
        document = copy.deepcopy(self.document)

        for section in SECTIONS:
            entries = document.setdefault(section, CommentedSeq())
            for item in incoming.get(section) or []:
                item = copy.deepcopy(item)
                if section == "clusters" and server and "server" in item.get("cluster", {}):
                    item["cluster"]["server"] = _with_host(item["cluster"]["server"], server, server_port)
                names = [entry["name"] for entry in entries]
                if item["name"] in names:
                    entries[names.index(item["name"])] = item
                else:
                    entries.append(item)

        if switch_context and incoming.get("current-context"):
            document["current-context"] = incoming["current-context"]
        logger.debug(f"Merged kubeconfig into {self.path}")
        return CredentialStore(path=self.path, document=document)

    def remove(self, context: str) -> "CredentialStore":
        """Drop a context with the cluster and user it references."""
        document = copy.deepcopy(self.document)
        entry = next((c for c in document.get("contexts") or [] if c["name"] == context), None)
        if entry is None:
            return self

        refs = {
            "contexts": context,
            "clusters": entry.get("context", {}).get("cluster"),
            "users": entry.get("context", {}).get("user"),
        }
        for section, name in refs.items():
            entries = document.get(section) or []
            for index in reversed(range(len(entries))):
                if entries[index]["name"] == name:
                    del entries[index]
        if document.get("current-context") == context:
            document["current-context"] = ""
        return CredentialStore(path=self.path, document=document)

    def dump(self) -> str:
        stream = io.StringIO()
        _yaml().dump(self.document, stream)
        return stream.getvalue()

    def save(self) -> None:
        """Write the kubeconfig with owner-only permissions."""
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(self.dump())
        logger.info(f"Saved kubeconfig: {self.path}")
