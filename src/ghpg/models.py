"""
Data model for the GHPG pipeline.

Records are built from deserialized GitHub API items, validated once and then
handed, unchanged, to the persistence layer.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from ghpg.errors import ParseError, ValidationError

OWNER_TYPES  = ("User", "Organization", "Bot")
VISIBILITIES = ("public", "private", "internal")

_MISSING = object()


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _required(item: Dict[str, Any], key: str, context: str = "repository") -> Any:
    value = item.get(key, _MISSING)
    if value is _MISSING or value is None:
        raise ParseError(f"Missing required field '{key}' in {context} item")
    return value


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse GitHub's ISO-8601 timestamps ('2011-01-26T19:01:12Z') as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ParseError(f"Invalid timestamp {value!r}: {e}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _is_http_uri(value: str) -> bool:
    parsed = urlparse(value or "")
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ------------------------------------------------------------------
# Repository records
# ------------------------------------------------------------------

@dataclass(frozen=True)
class RepositoryOwner:
    id: int
    login: str
    owner_type: str
    avatar_url: str
    html_url: str
    site_admin: bool = False

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RepositoryOwner":
        if not isinstance(item, dict):
            raise ParseError("Repository owner must be an object")
        return cls(
            id         = _required(item, "id", "owner"),
            login      = _required(item, "login", "owner"),
            owner_type = _required(item, "type", "owner"),
            avatar_url = _required(item, "avatar_url", "owner"),
            html_url   = _required(item, "html_url", "owner"),
            site_admin = bool(item.get("site_admin", False)),
        )

    def validate(self):
        if not self.login:
            raise ValidationError("owner.login", "cannot be empty")
        if self.owner_type not in OWNER_TYPES:
            raise ValidationError("owner.type", f"must be one of {', '.join(OWNER_TYPES)}")
        if not _is_http_uri(self.avatar_url):
            raise ValidationError("owner.avatar_url", "must be an http(s) URL")
        if not _is_http_uri(self.html_url):
            raise ValidationError("owner.html_url", "must be an http(s) URL")


@dataclass(frozen=True)
class RepositoryLicense:
    key: str
    name: str
    spdx_id: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_api(cls, item: Optional[Dict[str, Any]]) -> Optional["RepositoryLicense"]:
        if not item:
            return None
        return cls(
            key     = _required(item, "key", "license"),
            name    = _required(item, "name", "license"),
            spdx_id = item.get("spdx_id"),
            url     = item.get("url"),
        )

    def validate(self):
        if not self.key:
            raise ValidationError("license.key", "cannot be empty")
        if not self.name:
            raise ValidationError("license.name", "cannot be empty")
        if self.url and not _is_http_uri(self.url):
            raise ValidationError("license.url", "must be an http(s) URL")


@dataclass(frozen=True)
class Repository:
    """One repository from a search page; ``id`` is GitHub's id and the natural key."""

    id: int
    full_name: str
    name: str
    description: Optional[str]
    html_url: str
    clone_url: str
    ssh_url: str
    size: int
    stargazers_count: int
    watchers_count: int
    forks_count: int
    open_issues_count: int
    language: Optional[str]
    default_branch: str
    visibility: str
    private: bool
    fork: bool
    archived: bool
    disabled: bool
    created_at: datetime
    updated_at: datetime
    pushed_at: Optional[datetime]
    owner: RepositoryOwner
    license: Optional[RepositoryLicense] = None
    topics: Tuple[str, ...] = ()
    has_issues: bool = False
    has_projects: bool = False
    has_wiki: bool = False
    has_pages: bool = False
    has_downloads: bool = False

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "Repository":
        """
        Map a GitHub search item onto a Repository.

        Unknown fields are ignored; a missing required field raises ParseError.
        """
        if not isinstance(item, dict):
            raise ParseError("Repository item must be an object")

        private = bool(item.get("private", False))
        return cls(
            id                = _required(item, "id"),
            full_name         = _required(item, "full_name"),
            name              = _required(item, "name"),
            description       = item.get("description"),
            html_url          = _required(item, "html_url"),
            clone_url         = _required(item, "clone_url"),
            ssh_url           = _required(item, "ssh_url"),
            size              = item.get("size", 0),
            stargazers_count  = _required(item, "stargazers_count"),
            watchers_count    = item.get("watchers_count", 0),
            forks_count       = _required(item, "forks_count"),
            open_issues_count = item.get("open_issues_count", 0),
            language          = item.get("language"),
            default_branch    = _required(item, "default_branch"),
            visibility        = item.get("visibility") or ("private" if private else "public"),
            private           = private,
            fork              = bool(item.get("fork", False)),
            archived          = bool(item.get("archived", False)),
            disabled          = bool(item.get("disabled", False)),
            created_at        = parse_timestamp(_required(item, "created_at")),
            updated_at        = parse_timestamp(_required(item, "updated_at")),
            pushed_at         = parse_timestamp(item.get("pushed_at")),
            owner             = RepositoryOwner.from_api(_required(item, "owner")),
            license           = RepositoryLicense.from_api(item.get("license")),
            topics            = tuple(item.get("topics") or ()),
            has_issues        = bool(item.get("has_issues", False)),
            has_projects      = bool(item.get("has_projects", False)),
            has_wiki          = bool(item.get("has_wiki", False)),
            has_pages         = bool(item.get("has_pages", False)),
            has_downloads     = bool(item.get("has_downloads", False)),
        )

    def validate(self) -> "Repository":
        """Check business rules; returns self so it can be chained."""
        for name in ("full_name", "name", "default_branch", "ssh_url"):
            if not getattr(self, name):
                raise ValidationError(name, "cannot be empty")

        for name in ("html_url", "clone_url"):
            if not _is_http_uri(getattr(self, name)):
                raise ValidationError(name, "must be an http(s) URL")

        if self.visibility not in VISIBILITIES:
            raise ValidationError("visibility", f"must be one of {', '.join(VISIBILITIES)}")

        for name in ("size", "stargazers_count", "watchers_count",
                     "forks_count", "open_issues_count"):
            if getattr(self, name) < 0:
                raise ValidationError(name, "cannot be negative")

        self.owner.validate()
        if self.license is not None:
            self.license.validate()
        return self


@dataclass(frozen=True)
class SearchPage:
    """One page of search results as reported by the server."""

    total_count: int
    incomplete_results: bool
    items: Tuple[Repository, ...]

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "SearchPage":
        if not isinstance(payload, dict):
            raise ParseError("Search response must be a JSON object")
        items = _required(payload, "items", "search response")
        if not isinstance(items, list):
            raise ParseError("Search response 'items' must be an array")
        return cls(
            total_count        = _required(payload, "total_count", "search response"),
            incomplete_results = bool(_required(payload, "incomplete_results", "search response")),
            items              = tuple(Repository.from_api(item).validate() for item in items),
        )

    def __len__(self) -> int:
        return len(self.items)


# ------------------------------------------------------------------
# Rate limits
# ------------------------------------------------------------------

@dataclass(frozen=True)
class RateLimitSnapshot:
    limit: int
    remaining: int
    reset_at: datetime
    resource: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def seconds_until_reset(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (self.reset_at - now).total_seconds())


# ------------------------------------------------------------------
# Run bookkeeping
# ------------------------------------------------------------------

@dataclass
class RunMetadata:
    """One row of the query_history audit table."""

    search_query: str
    table_name: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    result_count: int = 0
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0
    success: bool = False
    error_message: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RunMetadata":
        run_id = row["id"]
        return cls(
            id            = run_id if isinstance(run_id, uuid.UUID) else uuid.UUID(str(run_id)),
            search_query  = row["search_query"],
            table_name    = row["table_name"],
            result_count  = row["result_count"],
            executed_at   = row["executed_at"],
            duration_ms   = row["duration_ms"],
            success       = row["success"],
            error_message = row.get("error_message"),
            error_kind    = row.get("error_kind"),
        )


@dataclass(frozen=True)
class TableStats:
    table_name: str
    total_repositories: int
    unique_languages: int
    unique_owners: int
    avg_stars: float
    max_stars: int
    avg_forks: float
    max_forks: int
    oldest_repo: Optional[datetime] = None
    newest_repo: Optional[datetime] = None
