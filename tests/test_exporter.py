import json

import pytest

from site_organizer import crud
from site_organizer.errors import ValidationError
from site_organizer.exporter import export_sites
from site_organizer.importer import parse


@pytest.fixture
def exported(seeded, site_factory):
    site_factory(
        "GitHub", "github.com", category_ids=["c1"], tag_ids=["t1", "t2"],
        description="Code hosting, with CI", is_favorite=True,
    )
    site_factory("Figma", "figma.com", category_ids=["c2"], pricing="paid")
    return seeded


class TestExport:
    def test_json_keeps_colors(self, exported) -> None:
        content, media_type, filename = export_sites(exported, "u1", "json")
        body = json.loads(content)

        assert media_type == "application/json"
        assert filename.endswith(".json")
        assert body["count"] == 2
        github = next(s for s in body["sites"] if s["name"] == "GitHub")
        assert github["categories_array"] == [{"name": "Dev", "color": "#111111"}]
        assert {"name": "git", "color": "#333333"} in github["tags_array"]

    def test_csv_header_and_multi_values(self, exported) -> None:
        content, media_type, _ = export_sites(exported, "u1", "csv")
        lines = content.splitlines()
        assert media_type == "text/csv"
        assert lines[0] == "Name,URL,Categories,Tags,Description,Pricing,Favorite,Pinned"
        # sorted by name
        assert lines[1].startswith("Figma,https://figma.com,Design,")

    @pytest.mark.parametrize("fmt", ["json", "csv", "html"])
    def test_reimport_round_trip(self, exported, fmt) -> None:
        content, _, filename = export_sites(exported, "u1", fmt)
        parsed = parse(filename, content)

        rows = {r.name: r for r in parsed.rows}
        assert set(rows) == {"GitHub", "Figma"}
        github = rows["GitHub"]
        assert github.url == "https://github.com"
        assert github.description == "Code hosting, with CI"
        assert github.pricing == "fully_free"
        assert github.is_favorite is True
        assert [c["name"] for c in github.categories] == ["Dev"]
        assert sorted(t["name"] for t in github.tags) == ["git", "hosting"]
        assert rows["Figma"].pricing == "paid"

    def test_only_own_sites(self, exported) -> None:
        content, _, _ = export_sites(exported, "u2", "json")
        assert json.loads(content)["count"] == 0

    def test_unknown_format(self, exported) -> None:
        with pytest.raises(ValidationError):
            export_sites(exported, "u1", "xml")

    def test_csv_term_names_with_separators_survive(self, seeded, site_factory) -> None:
        crud.create_term(seeded, "categories", {"id": "c3", "name": "Tools, misc", "user_id": "u1"})
        crud.create_term(seeded, "tags", {"id": "t3", "name": 'say "hi"; wave', "user_id": "u1"})
        site_factory("Zed", "zed.dev", category_ids=["c3", "c1"], tag_ids=["t3"])

        content, _, filename = export_sites(seeded, "u1", "csv")
        row = parse(filename, content).rows[0]
        assert sorted(c["name"] for c in row.categories) == ["Dev", "Tools, misc"]
        assert [t["name"] for t in row.tags] == ['say "hi"; wave']
