"""GitLab API client wrapper"""
import gitlab
import logging
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Iterable, Tuple

from supportcache.services.retry import with_retries

logger = logging.getLogger(__name__)

SOURCE = "gitlab"
SEARCH_MAX_PAGES = 3
SEARCH_PER_PAGE = 100
NO_BOARD = "(No Board)"
RELEASE_LABEL_PREFIXES = ("release::", "version::")


@dataclass(frozen=True)
class TrackerItem:
    """An issue as seen by the link crawl"""

    repo: str
    issue_number: int
    title: str
    body: str
    status: str
    sprint: Optional[str]
    milestone: Optional[str]
    release: Optional[str]
    url: str
    updated_at: Optional[str]
    board: str = NO_BOARD

    @property
    def text(self) -> str:
        return f"{self.title} {self.body}"


def parse_board_spec(spec: str) -> Tuple[str, int]:
    """Parse "group/project#12" into ("group/project", 12)."""
    project, sep, board_id = spec.strip().rpartition("#")
    if not sep or not project or not board_id.isdigit():
        raise ValueError(f"Invalid board spec {spec!r}; expected 'project_path#board_id'")
    return project, int(board_id)


class GitLabClient:
    """Wrapper for GitLab API operations"""

    def __init__(self, url: str, access_token: str, max_attempts: int = 3):
        """Initialize GitLab client"""
        self.url = url
        self.max_attempts = max_attempts
        self.gl = gitlab.Gitlab(url, private_token=access_token)
        self.gl.auth()

    def close(self):
        self.gl.session.close()

    @staticmethod
    def _safe_attr(obj: Any, name: str, default: Any = None) -> Any:
        """Get attribute or dict key safely."""
        if obj is None:
            return default
        if isinstance(obj, dict):
            return obj.get(name, default)
        return getattr(obj, name, default)

    def _with_retries(self, fn):
        return with_retries(fn, source=SOURCE, max_attempts=self.max_attempts, base_delay_s=0.5)

    def get_project(self, project_id: Any):
        """Get project by ID or path"""
        try:
            return self._with_retries(lambda: self.gl.projects.get(project_id))
        except gitlab.exceptions.GitlabGetError as e:
            logger.error(f"Failed to get project {project_id}: {e}")
            raise

    @classmethod
    def _release_from_labels(cls, labels: Iterable[str]) -> Optional[str]:
        for label in labels:
            lowered = label.lower()
            for prefix in RELEASE_LABEL_PREFIXES:
                if lowered.startswith(prefix):
                    return label[len(prefix):].strip() or None
        return None

    @classmethod
    def _state_status(cls, issue: Any) -> str:
        return "Closed" if cls._safe_attr(issue, "state") == "closed" else "Open"

    @classmethod
    def _to_item(cls, issue: Any, repo: str, status: str, board: str) -> TrackerItem:
        labels = list(cls._safe_attr(issue, "labels") or [])
        return TrackerItem(
            repo=repo,
            issue_number=int(cls._safe_attr(issue, "iid")),
            title=cls._safe_attr(issue, "title") or "",
            body=cls._safe_attr(issue, "description") or "",
            status=status,
            sprint=cls._safe_attr(cls._safe_attr(issue, "iteration"), "title"),
            milestone=cls._safe_attr(cls._safe_attr(issue, "milestone"), "title"),
            release=cls._release_from_labels(labels),
            url=cls._safe_attr(issue, "web_url") or "",
            updated_at=cls._safe_attr(issue, "updated_at"),
            board=board,
        )

    def get_board_items(self, project_path: str, board_id: int) -> List[TrackerItem]:
        """Issues of a board's project; status is the board list an issue sits in."""
        project = self.get_project(project_path)
        board = self._with_retries(lambda: project.boards.get(board_id))
        board_lists = self._with_retries(lambda: board.lists.list(get_all=True))
        list_labels = []
        for board_list in board_lists:
            label_name = self._safe_attr(self._safe_attr(board_list, "label"), "name")
            if label_name:
                list_labels.append(label_name)

        issues = self._with_retries(
            lambda: project.issues.list(
                get_all=True, state="all", per_page=100, order_by="updated_at", sort="desc"
            )
        )
        board_title = f"{project.path_with_namespace}: {self._safe_attr(board, 'name') or board_id}"
        items = []
        for issue in issues:
            labels = set(self._safe_attr(issue, "labels") or [])
            status = next((name for name in list_labels if name in labels), None)
            if status is None or self._safe_attr(issue, "state") == "closed":
                status = self._state_status(issue)
            items.append(self._to_item(issue, project.path_with_namespace, status, board_title))
        return items

    def list_board_items(self, board_specs: Iterable[str]) -> List[TrackerItem]:
        """Items from every configured board; a board that fails is logged and skipped."""
        items: List[TrackerItem] = []
        for spec in board_specs:
            project_path, board_id = parse_board_spec(spec)
            try:
                logger.info(f"Fetching items from GitLab board {project_path}#{board_id}...")
                board_items = self.get_board_items(project_path, board_id)
                logger.info(f"  Found {len(board_items)} items on board")
                items.extend(board_items)
            except Exception as e:
                logger.error(f"Error fetching board {spec}: {e}")
        return items

    def _search_scope(self, group: Optional[str], project_path: Optional[str]):
        if project_path:
            return self.get_project(project_path)
        if group:
            return self._with_retries(lambda: self.gl.groups.get(group))
        return self.gl

    def search_issues(
        self,
        terms: Iterable[str],
        group: Optional[str] = None,
        projects: Optional[List[str]] = None,
    ) -> List[TrackerItem]:
        """Full-text issue search for each term (limited pages), deduplicated by issue."""
        scopes = [self._search_scope(None, p) for p in projects] if projects else [self._search_scope(group, None)]
        project_paths: Dict[int, str] = {}
        seen = set()
        items: List[TrackerItem] = []

        for term in terms:
            try:
                logger.info(f"Searching GitLab issues for {term!r}...")
                for scope in scopes:
                    for page in range(1, SEARCH_MAX_PAGES + 1):
                        results = self._with_retries(
                            lambda: scope.search(
                                gitlab.const.SearchScope.ISSUES, term, page=page, per_page=SEARCH_PER_PAGE
                            )
                        )
                        for issue in results:
                            project_id = self._safe_attr(issue, "project_id")
                            if project_id not in project_paths:
                                project_paths[project_id] = self.get_project(project_id).path_with_namespace
                            repo = project_paths[project_id]
                            key = (repo, self._safe_attr(issue, "iid"))
                            if key in seen:
                                continue
                            seen.add(key)
                            items.append(self._to_item(issue, repo, self._state_status(issue), NO_BOARD))
                        if len(results) < SEARCH_PER_PAGE:
                            break
            except Exception as e:
                logger.error(f"Error searching for {term!r}: {e}")
        logger.info(f"Found {len(items)} issues from search")
        return items
