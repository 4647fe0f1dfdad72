"""FastAPI dependencies."""

from svnmigrate.container import Container, get_container
from svnmigrate.services.migration_service import MigrationService
from svnmigrate.services.vcs.svn_client import SvnClient


def container() -> Container:
    return get_container()


def migration_service() -> MigrationService:
    return get_container().service


def svn_client() -> SvnClient:
    return get_container().svn
