from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .config import Settings
from .errors import BackendNotFound, PackageNotFound, PluginNotFound
from .graphql import PLUGIN_PACKAGES, GraphQLClient
from .models import Plugin, PluginPackage

logger = logging.getLogger(__name__)


async def fetch_plugin_packages_raw(graphql: GraphQLClient, token: Optional[str] = None) -> List[Dict[str, Any]]:
    logger.info("Getting plugin info via GraphQL")
    data = await graphql.execute(PLUGIN_PACKAGES, operation_name="pluginPackages", token=token)
    packages = data.get("pluginPackages") or []
    logger.info("Retrieved %d plugin packages", len(packages))
    return packages


async def fetch_plugin_packages(graphql: GraphQLClient, token: Optional[str] = None) -> List[PluginPackage]:
    return [PluginPackage.model_validate(p) for p in await fetch_plugin_packages_raw(graphql, token)]


def _matches(package: PluginPackage, name: str, hint: str, manifest_id: Optional[str]) -> bool:
    pkg_name = package.name or ""
    if pkg_name == name:
        return True
    if hint and hint in pkg_name:
        return True
    return bool(manifest_id) and package.manifest_id == manifest_id


def find_backend_plugin(
    packages: List[PluginPackage],
    name: str,
    hint: str = "",
    manifest_id: Optional[str] = None,
) -> Plugin:
    if not packages:
        raise PluginNotFound("No plugin packages found")
    package = next((p for p in packages if _matches(p, name, hint, manifest_id)), None)
    if package is None:
        raise PackageNotFound(f"{name} plugin package not found")
    logger.info("Found plugin package: %s (ID: %s)", package.name, package.id)
    backend = package.backend
    if backend is None:
        raise BackendNotFound(f"{name} backend plugin not found")
    logger.info("Found backend plugin: %s (ID: %s)", backend.name, backend.id)
    return backend


async def resolve_backend_plugin_id(graphql: GraphQLClient, settings: Settings, token: Optional[str] = None) -> str:
    packages = await fetch_plugin_packages(graphql, token)
    backend = find_backend_plugin(
        packages,
        settings.plugin_package_name,
        settings.plugin_package_hint,
        settings.plugin_manifest_id,
    )
    return backend.id
