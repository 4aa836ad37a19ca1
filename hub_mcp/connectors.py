"""
Connector-backed tools: Figma, GitHub, Slack and Confluence.

Each handler calls one upstream REST API through ``ctx.http_client()``,
persists the raw upstream response as an artifact and reports the upstream
outcome in its Result. Missing credentials produce a failure Result without
any network traffic.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote
import base64
import json
import logging

import httpx

from .models import Artifact, ArtifactCreateInput, Result
from .schemas import (
    ConfluenceUpsertPageArgs,
    FigmaImportArgs,
    GithubCreatePrArgs,
    GithubPutFileArgs,
    SlackPostMessageArgs,
)
from .tools import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

FIGMA_API = "https://api.figma.com/v1"
GITHUB_API = "https://api.github.com"
SLACK_API = "https://slack.com/api"

GITHUB_API_VERSION = "2022-11-28"


def _json_object(resp: httpx.Response) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _record(
    ctx: ToolContext,
    type: str,
    source: str,
    content_text: str,
    metadata: Dict[str, Any],
    name: Optional[str] = None,
) -> Artifact:
    return ctx.store.create_artifact(
        ArtifactCreateInput(
            type=type,
            name=name,
            source=source,
            content_type="application/json",
            content_text=content_text,
            metadata=metadata,
        )
    )


def _upstream_error(service: str, resp: httpx.Response) -> str:
    return f"{service} API error: {resp.status_code} {resp.reason_phrase}".rstrip()


# Figma


def figma_import(args: FigmaImportArgs, ctx: ToolContext) -> Result:
    """Fetch a Figma file document and store it as a ``figma_file`` artifact."""
    token = ctx.config.figma_token
    if not token:
        return Result(success=False, reason="FIGMA_TOKEN is not configured")

    with ctx.http_client() as client:
        resp = client.get(
            f"{FIGMA_API}/files/{quote(args.file_key, safe='')}",
            headers={"X-Figma-Token": token},
        )

    if resp.is_error:
        logger.warning("Figma import of %s failed: %s", args.file_key, resp.status_code)
        return Result(
            success=False,
            reason=_upstream_error("Figma", resp),
            data=[{"status": resp.status_code, "details": resp.text}],
        )

    document = _json_object(resp)
    name = document.get("name") if isinstance(document.get("name"), str) else None
    artifact = _record(
        ctx,
        "figma_file",
        "figma",
        json.dumps(document),
        {"file_key": args.file_key},
        name=name or f"figma:{args.file_key}",
    )
    return Result(
        success=True,
        data=[{"artifact_id": artifact.id, "name": artifact.name, "file_key": args.file_key}],
    )


# GitHub


def _github_headers(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }


def _repo_url(owner: str, repo: str) -> str:
    return f"{GITHUB_API}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"


def github_put_file(args: GithubPutFileArgs, ctx: ToolContext) -> Result:
    """
    Create or update a file on a branch.

    The current blob sha is looked up first so that an existing file is
    updated instead of rejected.
    """
    token = ctx.config.github_token
    if not token:
        return Result(success=False, reason="GITHUB_TOKEN is not configured")

    headers = _github_headers(token)
    contents_url = f"{_repo_url(args.owner, args.repo)}/contents/{quote(args.path, safe='/')}"

    with ctx.http_client() as client:
        existing = client.get(contents_url, headers=headers, params={"ref": args.branch})
        sha = None
        if existing.is_success:
            sha = _json_object(existing).get("sha")

        body = {
            "message": args.message,
            "content": base64.b64encode(args.content.encode("utf-8")).decode("ascii"),
            "branch": args.branch,
        }
        if sha:
            body["sha"] = sha
        resp = client.put(contents_url, headers=headers, json=body)

    artifact = _record(
        ctx,
        "github_put_file_result",
        "github",
        resp.text,
        {
            "owner": args.owner,
            "repo": args.repo,
            "path": args.path,
            "branch": args.branch,
            "status": resp.status_code,
        },
    )
    payload = _json_object(resp)
    commit = payload.get("commit") or {}
    data = [
        {
            "status": resp.status_code,
            "artifact_id": artifact.id,
            "created": sha is None,
            "commit_sha": commit.get("sha"),
        }
    ]
    if resp.is_error:
        return Result(success=False, reason=_upstream_error("GitHub", resp), data=data)
    return Result(success=True, data=data)


def github_create_pr(args: GithubCreatePrArgs, ctx: ToolContext) -> Result:
    token = ctx.config.github_token
    if not token:
        return Result(success=False, reason="GITHUB_TOKEN is not configured")

    with ctx.http_client() as client:
        resp = client.post(
            f"{_repo_url(args.owner, args.repo)}/pulls",
            headers=_github_headers(token),
            json={
                "title": args.title,
                "head": args.head,
                "base": args.base,
                "body": args.body,
            },
        )

    payload = _json_object(resp)
    artifact = _record(
        ctx,
        "github_pull_request",
        "github",
        resp.text,
        {
            "owner": args.owner,
            "repo": args.repo,
            "head": args.head,
            "base": args.base,
            "status": resp.status_code,
        },
    )
    data = [
        {
            "status": resp.status_code,
            "artifact_id": artifact.id,
            "url": payload.get("html_url") if isinstance(payload.get("html_url"), str) else None,
            "number": payload.get("number") if isinstance(payload.get("number"), int) else None,
        }
    ]
    if resp.is_error:
        return Result(success=False, reason=_upstream_error("GitHub", resp), data=data)
    return Result(success=True, data=data)


# Slack


def slack_post_message(args: SlackPostMessageArgs, ctx: ToolContext) -> Result:
    token = ctx.config.slack_bot_token
    if not token:
        return Result(success=False, reason="SLACK_BOT_TOKEN is not configured")

    with ctx.http_client() as client:
        resp = client.post(
            f"{SLACK_API}/chat.postMessage",
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json; charset=utf-8",
            },
            json={"channel": args.channel, "text": args.text},
        )

    payload = _json_object(resp)
    artifact = _record(
        ctx,
        "slack_post_message_result",
        "slack",
        resp.text,
        {"channel": args.channel, "status": resp.status_code},
    )
    data = [
        {
            "status": resp.status_code,
            "artifact_id": artifact.id,
            "ts": payload.get("ts"),
            "channel": payload.get("channel") or args.channel,
        }
    ]
    # Slack reports most failures as HTTP 200 with ok=false
    if resp.is_success and payload.get("ok") is True:
        return Result(success=True, data=data)
    reason = payload.get("error") or _upstream_error("Slack", resp)
    return Result(success=False, reason=f"Slack error: {reason}", data=data)


# Confluence


def _escape_cql(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _page_url(payload: Dict[str, Any]) -> Optional[str]:
    links = payload.get("_links") or {}
    base, webui = links.get("base"), links.get("webui")
    if isinstance(base, str) and isinstance(webui, str):
        return f"{base}{webui}"
    return None


def confluence_upsert_page(args: ConfluenceUpsertPageArgs, ctx: ToolContext) -> Result:
    """
    Create or update a page by title within a space.

    Searches the space with CQL; the first hit is updated with its version
    bumped by one, otherwise a new page is created.
    """
    cfg = ctx.config
    missing: List[str] = [
        name
        for name, value in (
            ("ATLASSIAN_EMAIL", cfg.atlassian_email),
            ("ATLASSIAN_API_TOKEN", cfg.atlassian_api_token),
            ("CONFLUENCE_BASE_URL", cfg.confluence_base_url),
        )
        if not value
    ]
    if missing:
        return Result(
            success=False, reason=f"Missing Confluence config: {', '.join(missing)}"
        )

    base_url = cfg.confluence_base_url.rstrip("/")
    auth = (cfg.atlassian_email, cfg.atlassian_api_token)
    headers = {"Accept": "application/json"}
    storage = {"storage": {"value": args.body_html, "representation": "storage"}}
    cql = (
        f'space="{_escape_cql(args.space_key)}" AND type=page '
        f'AND title="{_escape_cql(args.title)}"'
    )

    with ctx.http_client() as client:
        search = client.get(
            f"{base_url}/rest/api/content/search",
            params={"cql": cql, "limit": 1, "expand": "version"},
            headers=headers,
            auth=auth,
        )
        if search.is_error:
            artifact = _record(
                ctx,
                "confluence_search_error",
                "confluence",
                search.text,
                {"space_key": args.space_key, "title": args.title, "status": search.status_code},
            )
            return Result(
                success=False,
                reason="Confluence search failed",
                data=[{"status": search.status_code, "artifact_id": artifact.id}],
            )

        results = _json_object(search).get("results") or []
        existing = results[0] if results else None

        if not existing or not existing.get("id"):
            resp = client.post(
                f"{base_url}/rest/api/content",
                headers=headers,
                auth=auth,
                json={
                    "type": "page",
                    "title": args.title,
                    "space": {"key": args.space_key},
                    "body": storage,
                },
            )
            artifact_type = "confluence_page_create"
            payload = _json_object(resp)
            page_id = payload.get("id") if isinstance(payload.get("id"), str) else None
        else:
            page_id = str(existing["id"])
            version = int((existing.get("version") or {}).get("number") or 1)
            resp = client.put(
                f"{base_url}/rest/api/content/{quote(page_id, safe='')}",
                headers=headers,
                auth=auth,
                json={
                    "id": page_id,
                    "type": "page",
                    "title": args.title,
                    "version": {"number": version + 1},
                    "body": storage,
                },
            )
            artifact_type = "confluence_page_update"
            payload = _json_object(resp)

    metadata = {"space_key": args.space_key, "title": args.title, "status": resp.status_code}
    if artifact_type == "confluence_page_update":
        metadata["page_id"] = page_id
    artifact = _record(ctx, artifact_type, "confluence", resp.text, metadata)

    data = [
        {
            "status": resp.status_code,
            "artifact_id": artifact.id,
            "page_id": page_id,
            "url": _page_url(payload),
            "created": artifact_type == "confluence_page_create",
        }
    ]
    if resp.is_error:
        return Result(success=False, reason=_upstream_error("Confluence", resp), data=data)
    return Result(success=True, data=data)


CONNECTOR_TOOLS = [
    ToolSpec(
        "figma_import",
        "Import a Figma file (by file key) into the hub as an artifact",
        FigmaImportArgs,
        figma_import,
    ),
    ToolSpec(
        "github_put_file",
        "Create or update a file in a GitHub repo on a given branch",
        GithubPutFileArgs,
        github_put_file,
    ),
    ToolSpec(
        "github_create_pr",
        "Open a GitHub pull request",
        GithubCreatePrArgs,
        github_create_pr,
    ),
    ToolSpec(
        "confluence_upsert_page",
        "Create or update a Confluence page (by title) in a space",
        ConfluenceUpsertPageArgs,
        confluence_upsert_page,
    ),
    ToolSpec(
        "slack_post_message",
        "Post a message to a Slack channel",
        SlackPostMessageArgs,
        slack_post_message,
    ),
]
