from __future__ import annotations

import logging

from pydantic import ValidationError

from .errors import AuthStartFailed, RefreshFailed, RemoteCallFailed
from .graphql import REFRESH_AUTHENTICATION_TOKEN, START_AUTHENTICATION_FLOW, GraphQLClient
from .models import AuthRequest, Credential

logger = logging.getLogger(__name__)


async def start_authentication_flow(graphql: GraphQLClient) -> AuthRequest:
    logger.info("Starting authentication flow via GraphQL")
    try:
        data = await graphql.execute(START_AUTHENTICATION_FLOW, operation_name="StartAuthenticationFlow")
    except RemoteCallFailed as e:
        raise AuthStartFailed(f"Failed to start auth flow: {e.message}") from e
    request = (data.get("startAuthenticationFlow") or {}).get("request")
    if not request:
        raise AuthStartFailed("No authentication request returned")
    try:
        auth_request = AuthRequest.model_validate(request)
    except ValidationError as e:
        raise AuthStartFailed(f"Malformed authentication request: {e}") from e
    logger.info("Auth flow started: %s", auth_request.id)
    return auth_request


async def refresh_access_token(graphql: GraphQLClient, refresh_token: str) -> Credential:
    logger.info("Attempting to refresh access token")
    try:
        data = await graphql.execute(
            REFRESH_AUTHENTICATION_TOKEN,
            variables={"refreshToken": refresh_token},
            operation_name="RefreshAuthenticationToken",
        )
    except RemoteCallFailed as e:
        raise RefreshFailed(f"Refresh failed: {e.message}") from e
    token = (data.get("refreshAuthenticationToken") or {}).get("token") or {}
    if not token.get("accessToken"):
        raise RefreshFailed("no token returned")
    try:
        credential = Credential.model_validate(token)
    except ValidationError as e:
        raise RefreshFailed(f"Malformed token returned: {e}") from e
    logger.info("Token refreshed successfully")
    return credential
