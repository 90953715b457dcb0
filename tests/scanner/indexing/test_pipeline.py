"""End-to-end tests for the scan pipeline."""

from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import pytest

from cataloger.config.loader import load_config
from cataloger.config.models import CatalogerConfig
from cataloger.core.errors import ErrorCode, SourceError
from cataloger.scanner._internal.db.database import Database
from cataloger.scanner._internal.db.reader import KnowledgeBaseReader
from cataloger.scanner._internal.indexing.pipeline import ScanPipeline, run_scan

USER_CS = """\
namespace Shop.Models;

public class User
{
    public string Id { get; set; }
    public string Name { get; set; }
}
"""

ORDER_CS = """\
namespace Shop.Models;

public class Order
{
    public string Id { get; set; }
    public string UserId { get; set; }
    public decimal Total { get; set; }
}
"""

REPOSITORY_CS = """\
using MongoDB.Driver;
using Shop.Models;

namespace Shop.Data;

public class OrderRepository
{
    private readonly IMongoCollection<Order> _orders;

    public OrderRepository(IMongoCollection<Order> orders)
    {
        _orders = orders;
    }

    public List<Order> ByUser(string userId)
    {
        return _orders.Find(o => o.UserId == userId).ToList();
    }
}
"""

PRODUCT_CS = """\
namespace Shop.Models;

public class Product
{
    public string Id { get; set; }
    public string Name { get; set; }
}
"""

COLLECTION_NAMES_CS = """\
namespace Shop.Data;

public static class CollectionNames
{
    public const string Orders = "tbl_orders";
}
"""

NAMED_REPOSITORY_CS = """\
using MongoDB.Driver;
using Shop.Models;

namespace Shop.Data;

public class OrderRepository
{
    private readonly IMongoCollection<Order> _orders;

    public OrderRepository(IMongoDatabase database)
    {
        _orders = database.GetCollection<Order>(CollectionNames.Orders);
    }

    public List<Order> ByUser(string userId)
    {
        return _orders.Find(o => o.UserId == userId).ToList();
    }
}
"""


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "shop"
    (root / "Models").mkdir(parents=True)
    (root / "Data").mkdir()
    (root / "Models" / "User.cs").write_text(USER_CS)
    (root / "Models" / "Order.cs").write_text(ORDER_CS)
    (root / "Data" / "OrderRepository.cs").write_text(REPOSITORY_CS)
    return root


def _config(tmp_path: Path, **overrides: Any) -> CatalogerConfig:
    scan = {"max_workers": 1, "commit_sha": "c0ffee"} | overrides.pop("scan", {})
    return load_config(
        tmp_path,
        scan=scan,
        database={"path": str(tmp_path / "kb.db")},
        **overrides,
    )


class FakeSource:
    """Serves users documents; any other collection fails."""

    def __init__(self) -> None:
        self.requested: list[tuple[str, int]] = []

    def sample(self, collection_name: str, size: int) -> Iterable[Mapping[str, Any]]:
        self.requested.append((collection_name, size))
        if collection_name != "users":
            raise RuntimeError("collection unavailable")
        return [
            {"_id": "u1", "Name": "Ada", "email": "ada@example.com"},
            {"_id": "u2", "Name": "Linus", "email": "linus@example.com"},
        ]


class TestScanPipeline:
    """Full scans of a small repository."""

    def test_given_repository_when_scanned_then_facts_written(
        self, repo: Path, tmp_path: Path
    ) -> None:
        """Two records, two inferred mappings, one find, one reference."""
        # When
        summary = ScanPipeline(repo, _config(tmp_path)).run()

        # Then
        assert summary.repository == "shop"
        assert summary.commit_sha == "c0ffee"
        assert summary.files_scanned == 3
        assert summary.files_failed == 0
        assert summary.lines_scanned > 0
        assert summary.code_types == 2
        assert summary.collection_mappings == 2
        assert summary.query_operations == 1
        assert summary.data_relationships == 1
        assert summary.observed_schemas == 0
        assert summary.failed_writes == 0
        assert summary.deadline_exceeded is False
        assert summary.kb_path == str(tmp_path / "kb.db")

    def test_operation_backfilled_with_mapping(self, repo: Path, tmp_path: Path) -> None:
        """A parameter-bound handle picks up the type's primary collection."""
        ScanPipeline(repo, _config(tmp_path)).run()

        db = Database(tmp_path / "kb.db")
        try:
            order = KnowledgeBaseReader(db).get_type("Shop.Models.Order")
        finally:
            db.dispose()

        assert order is not None
        assert [(m["collection_name"], m["method"], m["confidence"]) for m in order["mappings"]] == [
            ("orders", "inferred", 0.6)
        ]
        (op,) = order["operations"]
        assert op["kind"] == "Find"
        assert op["collection_name"] == "orders"
        assert op["collection_mapping_id"] == order["mappings"][0]["id"]
        assert [f["field_path"] for f in op["filters"]] == ["UserId"]
        assert op["provenance"]["commit_sha"] == "c0ffee"
        (rel,) = order["relationships"]
        assert rel["kind"] == "REFERS_TO"
        assert rel["target_type_name"] == "User"
        assert rel["confidence"] == pytest.approx(0.75)

    def test_rescan_is_idempotent(self, repo: Path, tmp_path: Path) -> None:
        config = _config(tmp_path)
        run_scan(repo, config)
        run_scan(repo, config)

        db = Database(tmp_path / "kb.db")
        try:
            counts = KnowledgeBaseReader(db).counts()
        finally:
            db.dispose()
        assert counts["code_types"] == 2
        assert counts["query_operations"] == 1
        assert counts["knowledge_base_entries"] == 6

    def test_missing_root_is_fatal(self, tmp_path: Path) -> None:
        with pytest.raises(SourceError):
            ScanPipeline(tmp_path / "missing", _config(tmp_path)).run()

    def test_unparseable_file_counted(self, repo: Path, tmp_path: Path) -> None:
        """A file over the error ratio is counted as failed, the rest still scan."""
        # Given
        (repo / "Broken.cs").write_text("}}} class ((( = = ; {{{ namespace")

        # When
        summary = ScanPipeline(repo, _config(tmp_path, scan={"max_error_ratio": 0.0})).run()

        # Then
        assert summary.files_failed == 1
        assert summary.files_scanned == 3
        assert summary.code_types == 2

    def test_expired_deadline_skips_files(self, repo: Path, tmp_path: Path) -> None:
        summary = ScanPipeline(repo, _config(tmp_path, scan={"deadline_sec": 0})).run()

        assert summary.deadline_exceeded is True
        assert summary.files_scanned == 0
        assert summary.files_skipped == 3
        assert summary.code_types == 0

    def test_summary_to_dict(self, repo: Path, tmp_path: Path) -> None:
        data = ScanPipeline(repo, _config(tmp_path)).run().to_dict()

        assert data["code_types"] == 2
        assert set(data) >= {"repository", "files_scanned", "duration_sec", "kb_path"}


class TestSampling:
    """Live sampling through an injected document source."""

    def test_sampling_disabled_by_default(self, repo: Path, tmp_path: Path) -> None:
        source = FakeSource()

        ScanPipeline(repo, _config(tmp_path), document_source=source).run()

        assert source.requested == []

    def test_given_sampling_enabled_then_schemas_written(self, repo: Path, tmp_path: Path) -> None:
        """Each mapped collection is sampled once; failures are counted."""
        # Given
        source = FakeSource()
        config = _config(
            tmp_path, sampling={"enabled": True, "max_documents_per_collection": 10}
        )

        # When
        summary = ScanPipeline(repo, config, document_source=source).run()

        # Then
        assert sorted(source.requested) == [("orders", 10), ("users", 10)]
        assert summary.collections_sampled == 1
        assert summary.sampling_failures == 1
        assert summary.observed_schemas == 1

        db = Database(tmp_path / "kb.db")
        try:
            user = KnowledgeBaseReader(db).get_type("User")
        finally:
            db.dispose()
        assert user is not None
        (schema,) = user["schemas"]
        assert schema["sample_size"] == 2
        assert schema["pii_redacted"] is True
        assert sorted(d["field_name"] for d in schema["pii_detections"]) == ["Name", "email"]
        assert "ada@example.com" not in str(schema)


@pytest.fixture
def tracked(git_work_tree: Callable[..., Any], tmp_path: Path) -> tuple[Any, str]:
    """The shop repository committed to git; returns the work tree and that commit."""
    tree = git_work_tree(tmp_path / "shop")
    tree.write("Models/User.cs", USER_CS)
    tree.write("Models/Order.cs", ORDER_CS)
    tree.write("Data/OrderRepository.cs", REPOSITORY_CS)
    return tree, tree.commit("Initial commit")


def _incremental(tmp_path: Path, base: str, head: str) -> CatalogerConfig:
    return _config(tmp_path, scan={"commit_sha": head, "last_commit_sha": base})


def _get_type(tmp_path: Path, name: str) -> dict[str, Any]:
    db = Database(tmp_path / "kb.db")
    try:
        found = KnowledgeBaseReader(db).get_type(name)
    finally:
        db.dispose()
    assert found is not None
    return found


class TestIncrementalScan:
    """Scans limited to the files changed since a previous commit."""

    def test_given_changed_files_when_scanned_since_base_then_rest_reused(
        self, tracked: tuple[Any, str], tmp_path: Path
    ) -> None:
        """Changed files are parsed; unchanged ones still join and infer."""
        # Given
        tree, base = tracked
        run_scan(tree.path, _config(tmp_path, scan={"commit_sha": base}))
        tree.write(
            "Models/Order.cs",
            ORDER_CS.replace(
                "    public decimal Total", "    public string ProductId { get; set; }\n    public decimal Total"
            ),
        )
        tree.write("Models/Product.cs", PRODUCT_CS)
        head = tree.commit("Add products")

        # When
        summary = ScanPipeline(tree.path, _incremental(tmp_path, base, head)).run()

        # Then
        assert summary.scan_type == "incremental"
        assert summary.last_commit_sha == base
        assert summary.files_scanned == 2
        assert summary.files_reused == 2
        assert summary.files_deleted == 0
        assert summary.code_types == 3
        assert summary.query_operations == 1
        assert summary.data_relationships == 2

        order = _get_type(tmp_path, "Shop.Models.Order")
        assert order["provenance"]["commit_sha"] == head
        assert sorted(r["target_type_name"] for r in order["relationships"]) == ["Product", "User"]
        (op,) = order["operations"]
        # the stored operation is joined again without being re-extracted
        assert op["provenance"]["commit_sha"] == base
        assert op["collection_mapping_id"] == order["mappings"][0]["id"]

    def test_incremental_scan_state_feeds_the_next_one(
        self, tracked: tuple[Any, str], tmp_path: Path
    ) -> None:
        tree, base = tracked
        run_scan(tree.path, _config(tmp_path, scan={"commit_sha": base}))
        tree.write("Models/Product.cs", PRODUCT_CS)
        head = tree.commit("Add products")
        run_scan(tree.path, _incremental(tmp_path, base, head))

        summary = ScanPipeline(tree.path, _incremental(tmp_path, head, head)).run()

        assert summary.scan_type == "incremental"
        assert summary.files_scanned == 0
        assert summary.files_reused == 4
        assert summary.code_types == 3
        assert summary.data_relationships == 1

    def test_deleted_file_drops_its_facts(self, tracked: tuple[Any, str], tmp_path: Path) -> None:
        """A type whose file is gone is no longer a relationship target."""
        # Given
        tree, base = tracked
        run_scan(tree.path, _config(tmp_path, scan={"commit_sha": base}))
        tree.remove("Models/User.cs")
        head = tree.commit("Drop users")

        # When
        summary = ScanPipeline(tree.path, _incremental(tmp_path, base, head)).run()

        # Then
        assert summary.files_scanned == 0
        assert summary.files_reused == 2
        assert summary.files_deleted == 1
        assert summary.code_types == 1
        assert summary.query_operations == 1
        assert summary.data_relationships == 0

    def test_changed_hint_resolves_with_stored_constants(
        self, tracked: tuple[Any, str], tmp_path: Path
    ) -> None:
        """A constant defined in an unchanged file still names the collection."""
        # Given
        tree, _ = tracked
        tree.write("Data/CollectionNames.cs", COLLECTION_NAMES_CS)
        base = tree.commit("Collection names")
        run_scan(tree.path, _config(tmp_path, scan={"commit_sha": base}))
        tree.write("Data/OrderRepository.cs", NAMED_REPOSITORY_CS)
        head = tree.commit("Name the orders collection")

        # When
        summary = ScanPipeline(tree.path, _incremental(tmp_path, base, head)).run()

        # Then
        assert summary.files_scanned == 1
        assert summary.files_reused == 3
        order = _get_type(tmp_path, "Shop.Models.Order")
        primary = order["mappings"][0]
        assert (primary["collection_name"], primary["method"], primary["confidence"]) == (
            "tbl_orders",
            "constant",
            0.8,
        )

    def test_without_stored_state_falls_back_to_full_scan(
        self, tracked: tuple[Any, str], tmp_path: Path
    ) -> None:
        tree, base = tracked

        summary = ScanPipeline(tree.path, _incremental(tmp_path, base, base)).run()

        assert summary.scan_type == "full"
        assert summary.files_scanned == 3
        assert summary.files_reused == 0
        assert summary.code_types == 2

    def test_unknown_base_commit(self, tracked: tuple[Any, str], tmp_path: Path) -> None:
        tree, base = tracked

        with pytest.raises(SourceError) as exc_info:
            ScanPipeline(tree.path, _incremental(tmp_path, "no-such-commit", base)).run()

        assert exc_info.value.code is ErrorCode.REVISION_NOT_FOUND
        assert not (tmp_path / "kb.db").exists()

    def test_outside_git_is_fatal(self, repo: Path, tmp_path: Path) -> None:
        with pytest.raises(SourceError) as exc_info:
            ScanPipeline(repo, _config(tmp_path, scan={"last_commit_sha": "HEAD"})).run()

        assert exc_info.value.code is ErrorCode.SOURCE_UNAVAILABLE
