from sqlalchemy.exc import OperationalError

from site_organizer import crud
from site_organizer.models import Site, SiteCategory, SiteTag
from site_organizer.relations import RelationSync


def _links(db, model, site_id):
    column = model.category_id if model is SiteCategory else model.tag_id
    return sorted(r[0] for r in db.query(column).filter(model.site_id == site_id).all())


class TestAttach:
    def test_attach_is_idempotent_under_retry(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com")
        sync = RelationSync(seeded)

        first = sync.attach_categories(site["id"], category_ids=["c1", "c2"])
        again = sync.attach_categories(site["id"], category_ids=["c1", "c2", "c1"])

        assert first.value == ["c1", "c2"]
        assert again.value == []
        assert again.ok
        assert _links(seeded, SiteCategory, site["id"]) == ["c1", "c2"]

    def test_unknown_ids_are_reported_not_inserted(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com")
        result = RelationSync(seeded).attach_tags(site["id"], ["t1", "nope"])

        assert result.value == ["t1"]
        assert [w.to_dict() for w in result.warnings] == [
            {"stage": "attach_tags", "status": "unknown_ids", "details": {"ids": ["nope"]}}
        ]
        assert _links(seeded, SiteTag, site["id"]) == ["t1"]

    def test_names_resolve_exact_case_and_unmatched_are_dropped(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com")
        result = RelationSync(seeded).attach_categories(
            site["id"], category_names=["Dev", "design", "Missing"], user_id="u1"
        )

        assert result.value == ["c1"]
        assert result.warnings[0].stage == "resolve_category_names"
        assert result.warnings[0].status == "unmatched"
        assert result.warnings[0].details == {"names": ["design", "Missing"]}
        assert _links(seeded, SiteCategory, site["id"]) == ["c1"]

    def test_ids_win_over_names(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com")
        result = RelationSync(seeded).attach_categories(site["id"], category_ids=["c2"], category_names=["Dev"])
        assert result.value == ["c2"]

    def test_failure_becomes_warning_and_keeps_site(self, seeded, site_factory, monkeypatch) -> None:
        site = site_factory("GitHub", "github.com")
        sync = RelationSync(seeded)

        def boom(*args, **kwargs):
            raise OperationalError("INSERT INTO site_tags", {}, Exception("database is locked"))

        monkeypatch.setattr(sync, "_existing_targets", boom)
        result = sync.attach_tags(site["id"], ["t1"])

        assert not result.ok
        assert result.warnings[0].stage == "attach_tags"
        assert result.warnings[0].status == "failed"
        assert "database is locked" in result.warnings[0].details
        assert seeded.query(Site).filter(Site.id == site["id"]).count() == 1


class TestReconcile:
    def test_converges_to_desired_sets(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com", category_ids=["c1"], tag_ids=["t1"])
        result = RelationSync(seeded).reconcile_membership(site["id"], ["c2"], ["t1", "t2"])

        assert result.ok
        assert result.value["categories"] == {"added": ["c2"], "removed": ["c1"]}
        assert result.value["tags"] == {"added": ["t2"], "removed": []}
        assert _links(seeded, SiteCategory, site["id"]) == ["c2"]
        assert _links(seeded, SiteTag, site["id"]) == ["t1", "t2"]

    def test_none_leaves_side_untouched_and_empty_clears(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com", category_ids=["c1"], tag_ids=["t1"])
        RelationSync(seeded).reconcile_membership(site["id"], None, [])

        assert _links(seeded, SiteCategory, site["id"]) == ["c1"]
        assert _links(seeded, SiteTag, site["id"]) == []

    def test_readd_after_remove(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com", tag_ids=["t1"])
        sync = RelationSync(seeded)
        sync.reconcile_membership(site["id"], None, [])
        sync.reconcile_membership(site["id"], None, ["t1"])
        assert _links(seeded, SiteTag, site["id"]) == ["t1"]


class TestCreatePath:
    def test_create_with_ids_reads_back_exact_membership(self, seeded) -> None:
        result = crud.create_site(seeded, {
            "name": "GitHub",
            "url": "github.com",
            "pricing": "fully_free",
            "user_id": "u1",
            "category_ids": ["c1"],
            "tag_ids": ["t1", "t2"],
        })

        assert result.ok
        site = result.value
        assert site["url"] == "https://github.com"
        assert [c["id"] for c in site["categories"]] == ["c1"]
        assert sorted(t["id"] for t in site["tags"]) == ["t1", "t2"]

    def test_relation_failure_returns_site_with_warning(self, seeded, monkeypatch) -> None:
        def boom(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("timeout"))

        monkeypatch.setattr(RelationSync, "_existing_targets", boom)
        result = crud.create_site(seeded, {
            "name": "GitHub", "url": "github.com", "pricing": "paid", "user_id": "u1", "tag_ids": ["t1"],
        })

        assert result.value["id"]
        assert result.value["tags"] == []
        assert result.warning_dicts()[0]["stage"] == "attach_tags"

    def test_retry_relations_attaches_missing(self, seeded, site_factory) -> None:
        site = site_factory("GitHub", "github.com")
        result = crud.retry_relations(seeded, site["id"], ["c1"], ["t2"])
        assert [c["id"] for c in result.value["categories"]] == ["c1"]
        assert [t["id"] for t in result.value["tags"]] == ["t2"]
