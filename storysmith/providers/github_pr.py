"""GitHub pull request automation using direct REST API calls."""

import asyncio
from typing import Any

import httpx
import structlog

from storysmith.config.settings import GitHubConfig
from storysmith.exceptions import CIError, ExternalServiceError, PullRequestError
from storysmith.models.domain import CIResult, PullRequestResult
from storysmith.providers.base import PullRequestAutomator
from storysmith.utils.retry import async_retry

log = structlog.get_logger(__name__)

FAILED_CONCLUSIONS = frozenset({"failure", "cancelled", "timed_out", "action_required", "startup_failure"})


class GitHubPullRequestAutomator(PullRequestAutomator):
    """Opens PRs, waits for check runs and merges via the GitHub REST API.

    Transport errors are retried by ``async_retry``; HTTP errors become
    ``PullRequestError`` / ``CIError``.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        api_url: str = "https://api.github.com",
        ci_poll_interval: float = 30.0,
        ci_timeout: float = 1800.0,
        merge_method: str = "squash",
        client: httpx.AsyncClient | None = None,
    ):
        self.owner = owner
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.ci_poll_interval = ci_poll_interval
        self.ci_timeout = ci_timeout
        self.merge_method = merge_method
        self.client = client or httpx.AsyncClient(
            base_url=self.api_url,
            timeout=30.0,
            headers={
                "Authorization": f"Bearer {token.strip()}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    @classmethod
    def from_config(cls, config: GitHubConfig) -> "GitHubPullRequestAutomator":
        if not config.owner or not config.repo or config.token is None:
            raise PullRequestError("github.owner, github.repo and github.token must be configured")
        return cls(
            owner=config.owner,
            repo=config.repo,
            token=config.token.get_secret_value(),
            api_url=config.api_url,
            ci_poll_interval=config.ci_poll_interval,
            ci_timeout=config.ci_timeout,
            merge_method=config.merge_method,
        )

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def close(self) -> None:
        await self.client.aclose()

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.TransportError,))
    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self.client.request(method, f"{self._repo_path}{path}", **kwargs)

    async def create_pull_request(
        self,
        title: str,
        body: str,
        head_branch: str,
        base_branch: str,
        labels: list[str] | None = None,
    ) -> PullRequestResult:
        log.info("create_pull_request", head=head_branch, base=base_branch)
        response = await self._request(
            "POST", "/pulls", json={"title": title, "body": body, "head": head_branch, "base": base_branch}
        )

        if response.status_code == 422 and "already exists" in response.text:
            data = await self._find_open_pull_request(head_branch)
            if data is None:
                raise PullRequestError("Pull request reported as existing but not found", status_code=422)
            log.info("pull_request_exists", number=data["number"])
            response = await self._request("PATCH", f"/pulls/{data['number']}", json={"title": title, "body": body})

        self._raise_for_status(response, PullRequestError, "Cannot create pull request")
        data = response.json()

        if labels:
            label_response = await self._request("POST", f"/issues/{data['number']}/labels", json={"labels": labels})
            if label_response.is_error:
                log.warning("pull_request_labels_failed", number=data["number"], status=label_response.status_code)

        return PullRequestResult(
            url=data["html_url"],
            number=data["number"],
            title=data.get("title", title),
            body=data.get("body") or body,
            base_branch=base_branch,
            head_branch=head_branch,
            state="open",
        )

    async def _find_open_pull_request(self, head_branch: str) -> dict[str, Any] | None:
        response = await self._request(
            "GET", "/pulls", params={"head": f"{self.owner}:{head_branch}", "state": "open"}
        )
        self._raise_for_status(response, PullRequestError, "Cannot list pull requests")
        pulls = response.json()
        return pulls[0] if pulls else None

    async def monitor_ci_and_merge(self, pr_number: int, auto_merge: bool) -> CIResult:
        if not auto_merge:
            log.info("ci_monitor_skipped", pr_number=pr_number)
            return CIResult(status="skipped")

        response = await self._request("GET", f"/pulls/{pr_number}")
        self._raise_for_status(response, CIError, f"Cannot read pull request #{pr_number}")
        head_sha = response.json()["head"]["sha"]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ci_timeout
        polls = 0
        while True:
            polls += 1
            finished, failed = await self._check_runs(head_sha)
            log.info("ci_polled", pr_number=pr_number, poll=polls, finished=finished, failed=failed)
            if failed:
                raise CIError(f"CI failed for pull request #{pr_number}: {', '.join(failed)}")
            if finished:
                break
            if loop.time() >= deadline:
                raise CIError(f"CI did not finish within {self.ci_timeout:.0f}s for pull request #{pr_number}")
            await asyncio.sleep(self.ci_poll_interval)

        merge = await self._request("PUT", f"/pulls/{pr_number}/merge", json={"merge_method": self.merge_method})
        self._raise_for_status(merge, CIError, f"Cannot merge pull request #{pr_number}")
        log.info("pull_request_merged", pr_number=pr_number, method=self.merge_method)
        return CIResult(status="success", merged=True)

    async def _check_runs(self, sha: str) -> tuple[bool, list[str]]:
        """Return (all finished, names of failed checks) for a commit."""
        response = await self._request("GET", f"/commits/{sha}/check-runs", params={"per_page": 100})
        self._raise_for_status(response, CIError, "Cannot read check runs")
        runs = response.json().get("check_runs", [])

        failed = [r["name"] for r in runs if r.get("conclusion") in FAILED_CONCLUSIONS]
        finished = all(r.get("status") == "completed" for r in runs)
        return finished, failed

    async def delete_branch(self, branch: str) -> None:
        response = await self._request("DELETE", f"/git/refs/heads/{branch}")
        if response.status_code in (404, 422):
            log.debug("branch_already_deleted", branch=branch)
            return
        self._raise_for_status(response, PullRequestError, f"Cannot delete branch {branch}")
        log.info("branch_deleted", branch=branch)

    @staticmethod
    def _raise_for_status(response: httpx.Response, error_cls: type[ExternalServiceError], message: str) -> None:
        if response.is_error:
            raise error_cls(message, status_code=response.status_code, response_text=response.text)
