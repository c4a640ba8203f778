from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from elasticsearch import ApiError, Elasticsearch, TransportError

from .config import client_timeout
from .errors import FatalSyncError, IndexWriteError, SchemaMismatchError, TransientNetworkError
from .schema import ALL_SPECS, INDEX_SETTINGS, IndexSpec
from .util import log

RETRYABLE_STATUS = frozenset({429, 502, 503, 504})


class IndexAction(NamedTuple):
    op: str  # "index" or "delete"
    index: str
    doc_id: str
    body: Optional[Dict[str, Any]] = None


def index_action(index: str, doc_id: Any, body: Dict[str, Any]) -> IndexAction:
    return IndexAction("index", index, str(doc_id), body)


def delete_action(index: str, doc_id: Any) -> IndexAction:
    return IndexAction("delete", index, str(doc_id))


def make_client(cfg: Dict[str, Any]) -> Elasticsearch:
    return Elasticsearch(
        cfg["elastic_url"],
        request_timeout=client_timeout(cfg),
        max_retries=0,
        sniff_on_start=bool(cfg.get("elastic_sniff", False)),
    )


def _body(response: Any) -> Any:
    return getattr(response, "body", response)


def _status(exc: ApiError) -> int:
    meta = getattr(exc, "meta", None)
    return int(getattr(meta, "status", 0) or 0)


def _transient(what: str, exc: Exception) -> TransientNetworkError:
    return TransientNetworkError(f"{what}: {exc}")


class IndexManager:
    """Creates the target indices before any write happens."""

    def __init__(self, es: Elasticsearch):
        self.es = es

    def ensure_indices(self, specs: Iterable[IndexSpec] = ALL_SPECS) -> List[str]:
        return [spec.name for spec in specs if self.ensure_index(spec)]

    def ensure_index(self, spec: IndexSpec) -> bool:
        try:
            exists = bool(self.es.indices.exists(index=spec.name))
        except TransportError as exc:
            raise _transient(f"exists({spec.name})", exc) from exc
        if exists:
            self.verify_mapping(spec)
            return False

        try:
            result = _body(
                self.es.indices.create(index=spec.name, settings=INDEX_SETTINGS, mappings=spec.mappings())
            )
        except TransportError as exc:
            raise _transient(f"create({spec.name})", exc) from exc
        except ApiError as exc:
            if "resource_already_exists_exception" in str(exc):
                self.verify_mapping(spec)
                return False
            raise FatalSyncError(f"create index {spec.name} failed: {exc}") from exc
        if not result.get("acknowledged"):
            raise FatalSyncError(f"create index {spec.name} failed: not acknowledged")
        log(f"Created index {spec.name} ({spec.doc_type})")
        return True

    def verify_mapping(self, spec: IndexSpec) -> None:
        try:
            response = _body(self.es.indices.get_mapping(index=spec.name))
        except TransportError as exc:
            raise _transient(f"get_mapping({spec.name})", exc) from exc
        mapping = response.get(spec.name) or next(iter(response.values()), {})
        properties = mapping.get("mappings", {}).get("properties", {})

        problems = []
        for field, declared in spec.properties.items():
            actual = properties.get(field)
            if actual is None:
                problems.append(f"{field} missing")
            elif actual.get("type") != declared["type"]:
                problems.append(f"{field} is {actual.get('type')}, expected {declared['type']}")
        if problems:
            raise SchemaMismatchError(spec.name, problems)


class IndexerClient:
    """Bulk writer with at-least-once semantics.

    Every document is addressed by its natural key, so replaying a batch
    overwrites instead of duplicating and a retried delete of a missing id is
    a no-op.
    """

    def __init__(self, es: Elasticsearch, refresh: bool = False):
        self.es = es
        self.refresh = refresh

    def bulk_write(self, actions: List[IndexAction]) -> int:
        if not actions:
            return 0
        operations: List[Dict[str, Any]] = []
        for action in actions:
            operations.append({action.op: {"_index": action.index, "_id": action.doc_id}})
            if action.op == "index":
                operations.append(action.body or {})

        kwargs: Dict[str, Any] = {"operations": operations}
        if self.refresh:
            kwargs["refresh"] = "wait_for"
        try:
            response = _body(self.es.bulk(**kwargs))
        except TransportError as exc:
            raise _transient("bulk", exc) from exc
        except ApiError as exc:
            if _status(exc) in RETRYABLE_STATUS:
                raise _transient("bulk", exc) from exc
            raise IndexWriteError(f"bulk request rejected: {exc}") from exc

        if not response.get("errors"):
            return len(actions)
        return self._check_items(response.get("items", []), len(actions))

    @staticmethod
    def _check_items(items: List[Dict[str, Any]], total: int) -> int:
        retryable = 0
        failures = []
        for item in items:
            op, result = next(iter(item.items()))
            status = int(result.get("status", 0))
            if status < 300 or (op == "delete" and status == 404):
                continue
            if status in RETRYABLE_STATUS:
                retryable += 1
                continue
            failures.append({"op": op, "index": result.get("_index"), "id": result.get("_id"), "error": result.get("error")})
        if failures:
            first = failures[0]
            raise IndexWriteError(
                f"{len(failures)} of {total} documents rejected, first {first['index']}/{first['id']}: {first['error']}",
                failures,
            )
        if retryable:
            raise TransientNetworkError(f"{retryable} of {total} documents throttled by the index")
        return total

    def get_document(self, index: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        try:
            response = _body(self.es.get(index=index, id=str(doc_id)))
        except TransportError as exc:
            raise _transient(f"get({index}/{doc_id})", exc) from exc
        except ApiError as exc:
            if _status(exc) == 404:
                return None
            raise
        if not response.get("found", True):
            return None
        return response.get("_source")
