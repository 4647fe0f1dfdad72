"""
GitLab project lookup.

Resolves a project's clone URL and builds the authenticated push URL.
"""

import logging
from typing import Any, Dict
from urllib.parse import urlsplit, urlunsplit

import httpx

from svnmigrate.exceptions import NotFoundError, RemoteConnectionError

logger = logging.getLogger(__name__)

GITLAB_TIMEOUT = 30.0


def build_push_url(http_url_to_repo: str, token: str) -> str:
    """
    Embed token credentials into a clone URL.

    https://gitlab.example/group/proj.git -> https://oauth2:<token>@gitlab.example/group/proj.git
    """
    parts = urlsplit(http_url_to_repo)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"oauth2:{token}@{host}", parts.path, parts.query, parts.fragment))


class GitLabClient:
    """Minimal GitLab REST v4 client."""

    def __init__(self, gitlab_url: str, token: str, transport: httpx.BaseTransport | None = None):
        self.gitlab_url = gitlab_url.rstrip("/")
        self.token = token
        self._transport = transport

    def get_project(self, project_id: int) -> Dict[str, Any]:
        """
        Fetch project metadata.

        Raises:
            NotFoundError: project does not exist or is not visible
            RemoteConnectionError: unreachable, auth rejected, or other API failure
        """
        url = f"{self.gitlab_url}/api/v4/projects/{project_id}"
        try:
            with httpx.Client(transport=self._transport, timeout=GITLAB_TIMEOUT) as client:
                response = client.get(url, headers={"PRIVATE-TOKEN": self.token})
        except httpx.HTTPError as e:
            raise RemoteConnectionError("GitLab API", str(e)) from e

        if response.status_code in (401, 403):
            raise RemoteConnectionError("GitLab API", f"status {response.status_code}")
        if response.status_code == 404:
            raise NotFoundError(f"GitLab project {project_id}")
        if response.status_code != 200:
            raise RemoteConnectionError("GitLab API", f"status {response.status_code}")

        return response.json()

    def resolve_push_url(self, project_id: int) -> str:
        project = self.get_project(project_id)
        clone_url = project.get("http_url_to_repo")
        if not clone_url:
            raise RemoteConnectionError("GitLab API", f"project {project_id} has no http_url_to_repo")
        return build_push_url(clone_url, self.token)
