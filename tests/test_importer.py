import json

import pytest

from site_organizer.errors import ImportParseError
from site_organizer.importer import (
    ImportRow,
    finalize_rows,
    import_rows,
    is_bookmark_file,
    normalize_pricing,
    parse,
    parse_bookmarks,
    parse_html_table,
    split_multi,
    tokenize_csv,
)
from site_organizer.models import Category, Site, SiteCategory, Tag
from site_organizer.queries import ListQueryBuilder, SiteFilters

BOOKMARKS = """<!DOCTYPE NETSCAPE-Bookmark-file-1>
<META HTTP-EQUIV="Content-Type" CONTENT="text/html; charset=UTF-8">
<TITLE>Bookmarks</TITLE>
<H1>Bookmarks</H1>
<DL><p>
    <DT><H3 ADD_DATE="1700000000">Bookmarks bar</H3>
    <DL><p>
        <DT><H3>Dev</H3>
        <DL><p>
            <DT><A HREF="https://github.com/" ADD_DATE="1700000000">GitHub</A>
            <DT><A HREF="chrome://settings">Settings</A>
        </DL><p>
        <DT><H3>Tools</H3>
        <DL><p>
            <DT><A HREF="https://github.com">GitHub mirror</A>
            <DT><A HREF="https://regex101.com">regex101</A>
        </DL><p>
        <DT><A HREF="https://news.ycombinator.com">HN</A>
    </DL><p>
</DL><p>
"""


def _categories(row):
    return [c["name"] for c in row.categories]


class TestPricing:
    @pytest.mark.parametrize("raw, expected", [
        ("Besplatno", "fully_free"),
        ("Free", "fully_free"),
        ("fully free", "fully_free"),
        ("Free trial", "free_trial"),
        ("Freemium", "freemium"),
        ("Nešto se plaća", "paid"),
        ("Premium", "paid"),
        ("gibberish", None),
        ("", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected) -> None:
        assert normalize_pricing(raw) == expected


class TestCsv:
    def test_quotes_commas_and_crlf(self) -> None:
        text = 'Name,URL,Description\r\nGitHub,https://github.com,"He said ""hi, there"""\r\n'
        assert tokenize_csv(text) == [
            ["Name", "URL", "Description"],
            ["GitHub", "https://github.com", 'He said "hi, there"'],
        ]

    def test_newline_inside_quotes(self) -> None:
        rows = tokenize_csv('a,b\n"line one\nline two",x\n\n')
        assert rows == [["a", "b"], ["line one\nline two", "x"]]

    def test_unterminated_quote(self) -> None:
        with pytest.raises(ImportParseError):
            tokenize_csv('a,b\n"open,x\n')

    def test_header_synonyms_and_multi_values(self) -> None:
        text = (
            "Title,Link,Kategorija,Oznake,Cena,Favorite\n"
            "GitHub,https://github.com,Dev;Tools,\"git, hosting\",Besplatno,yes\n"
        )
        parsed = parse("sites.csv", text.encode("utf-8"))
        row = parsed.rows[0]
        assert parsed.format == "csv"
        assert (row.name, row.url, row.pricing, row.is_favorite) == (
            "GitHub", "https://github.com", "fully_free", True,
        )
        assert _categories(row) == ["Dev", "Tools"]
        assert [t["name"] for t in row.tags] == ["git", "hosting"]

    def test_quoted_term_keeps_separators(self) -> None:
        assert split_multi('"Tools, misc"; Dev') == ["Tools, misc", "Dev"]
        assert split_multi('"Say ""hi"""') == ['Say "hi"']
        assert split_multi("a;;b,") == ["a", "b"]

    def test_header_only_is_rejected(self) -> None:
        with pytest.raises(ImportParseError):
            parse("sites.csv", "Name,URL\n")

    def test_needs_name_or_url_column(self) -> None:
        with pytest.raises(ImportParseError):
            parse("sites.csv", "Foo,Bar\n1,2\n")


class TestJson:
    def test_bare_array_and_wrapped_object(self) -> None:
        item = {"name": "GitHub", "url": "https://github.com", "categories": ["Dev"], "pricing": "free"}
        for content in (json.dumps([item]), json.dumps({"sites": [item]}), json.dumps({"data": [item]})):
            row = parse("export.json", content).rows[0]
            assert row.name == "GitHub"
            assert _categories(row) == ["Dev"]
            assert row.pricing == "fully_free"

    def test_exported_arrays_keep_colors(self) -> None:
        content = json.dumps({"sites": [{
            "name": "GitHub",
            "url": "https://github.com",
            "categories_array": [{"name": "Dev", "color": "#111111"}],
            "tags_array": [{"name": "git", "color": "#333333"}],
        }]})
        row = parse("export.json", content).rows[0]
        assert row.categories == [{"name": "Dev", "color": "#111111"}]
        assert row.tags == [{"name": "git", "color": "#333333"}]

    def test_invalid_json(self) -> None:
        with pytest.raises(ImportParseError):
            parse("export.json", "{not json")
        with pytest.raises(ImportParseError):
            parse("export.json", json.dumps({"items": []}))


class TestHtmlTable:
    def test_headers_with_selected_values(self) -> None:
        html = """
        <table>
          <thead><tr><th>Name</th><th>URL</th><th>Category</th><th>Tags</th><th>Pricing</th></tr></thead>
          <tbody>
            <tr>
              <td>GitHub</td>
              <td><a href="https://github.com">github.com</a></td>
              <td><span class="selected-value">Dev</span><span class="selected-value">Tools</span></td>
              <td>git, hosting</td>
              <td>Besplatno</td>
            </tr>
          </tbody>
        </table>
        """
        row = parse_html_table(html)[0]
        assert (row.name, row.url, row.pricing) == ("GitHub", "https://github.com", "fully_free")
        assert _categories(row) == ["Dev", "Tools"]
        assert [t["name"] for t in row.tags] == ["git", "hosting"]

    def test_positional_cells_without_headers(self) -> None:
        rows = parse_html_table("<table><tr><td>GitHub</td><td>https://github.com</td></tr></table>")
        assert (rows[0].name, rows[0].url) == ("GitHub", "https://github.com")

    def test_positional_text_is_not_taken_as_url(self) -> None:
        html = (
            "<table><tr><td>GitHub</td><td>Code hosting</td>"
            "<td><a href='https://github.com'>open</a></td></tr></table>"
        )
        rows = parse_html_table(html)
        assert [(r.name, r.url) for r in rows] == [("GitHub", "https://github.com")]

    def test_definition_list_page_is_not_bookmarks(self) -> None:
        html = (
            "<dl><dt>Glossary</dt><dd>Words we use</dd></dl>"
            "<table><tr><th>Name</th><th>URL</th></tr>"
            "<tr><td>Figma</td><td>https://figma.com</td></tr></table>"
        )
        assert is_bookmark_file(html) is False
        parsed = parse("page.html", html)
        assert parsed.format == "html"
        assert [(r.name, r.url) for r in parsed.rows] == [("Figma", "https://figma.com")]

    def test_loose_links_skip_notion(self) -> None:
        html = '<p><a href="https://www.notion.so/page">Notion</a> <a href="https://figma.com">Figma</a></p>'
        rows = parse_html_table(html)
        assert [(r.name, r.url) for r in rows] == [("Figma", "https://figma.com")]


class TestBookmarks:
    def test_folder_path_and_skip_list(self) -> None:
        rows = parse_bookmarks(BOOKMARKS)
        by_name = {r.name: r for r in rows}
        assert _categories(by_name["GitHub"]) == ["Dev"]
        assert _categories(by_name["regex101"]) == ["Tools"]
        assert _categories(by_name["HN"]) == []
        assert "Settings" not in by_name

    def test_add_date_becomes_created_at(self) -> None:
        row = next(r for r in parse_bookmarks(BOOKMARKS) if r.name == "GitHub")
        assert row.created_at.isoformat() == "2023-11-14T22:13:20"

    def test_duplicates_merge_categories(self) -> None:
        parsed = parse("bookmarks.html", BOOKMARKS)
        github = [r for r in parsed.rows if "github.com" in r.url]
        assert parsed.format == "bookmarks"
        assert len(github) == 1
        assert _categories(github[0]) == ["Dev", "Tools"]
        assert parsed.skipped == 1


class TestFinalize:
    def test_scheme_fixup_and_drops(self) -> None:
        rows = [
            ImportRow(name="", url="www.figma.com"),
            ImportRow(name="FTP", url="ftp://files.example"),
            ImportRow(name="Nothing", url=""),
        ]
        kept, skipped = finalize_rows(rows)
        assert [(r.name, r.url) for r in kept] == [("figma.com", "https://www.figma.com")]
        assert skipped == 2

    def test_dedupe_ors_flags_and_keeps_first_name(self) -> None:
        rows = [
            ImportRow(name="GitHub", url="https://github.com/", tags=[{"name": "git", "color": None}]),
            ImportRow(name="Other", url="HTTPS://GITHUB.COM", is_favorite=True,
                      tags=[{"name": "hosting", "color": None}]),
        ]
        kept, _ = finalize_rows(rows)
        assert len(kept) == 1
        assert kept[0].name == "GitHub"
        assert kept[0].is_favorite is True
        assert [t["name"] for t in kept[0].tags] == ["git", "hosting"]


class TestParseErrors:
    @pytest.mark.parametrize("filename, content", [
        ("sites.csv", ""),
        ("sites.txt", "Name,URL\nGitHub,https://github.com\n"),
        ("sites.json", "[]"),
        ("page.html", "<p>nothing here</p>"),
    ])
    def test_rejected(self, filename, content) -> None:
        with pytest.raises(ImportParseError):
            parse(filename, content)

    def test_non_utf8(self) -> None:
        with pytest.raises(ImportParseError):
            parse("sites.csv", b"\xff\xfe\x00bad")

    def test_bom_is_stripped(self) -> None:
        content = "\ufeffName,URL\nGitHub,https://github.com\n".encode("utf-8")
        assert parse("sites.csv", content).rows[0].name == "GitHub"


class TestImportRows:
    def test_creates_missing_terms_and_links(self, seeded) -> None:
        rows, _ = finalize_rows([
            ImportRow(name="GitHub", url="https://github.com",
                      categories=[{"name": "dev", "color": None}, {"name": "Tools", "color": None}],
                      tags=[{"name": "git", "color": None}]),
        ])
        report = import_rows(seeded, rows, "u1", import_source="csv")

        assert report.to_dict()["created"] == 1
        assert report.categories_created == 1
        assert report.tags_created == 0
        tools = seeded.query(Category).filter(Category.name == "Tools").one()
        assert tools.color == "#6CBBFB"
        site = seeded.query(Site).one()
        assert site.import_source == "csv"
        linked = sorted(r[0] for r in seeded.query(SiteCategory.category_id).filter(SiteCategory.site_id == site.id))
        assert linked == sorted(["c1", tools.id])

    def test_existing_site_is_updated_not_duplicated(self, seeded, site_factory) -> None:
        existing = site_factory("Old name", "github.com", category_ids=["c2"])
        rows, _ = finalize_rows([
            ImportRow(name="GitHub", url="https://github.com/", pricing="paid",
                      categories=[{"name": "Dev", "color": None}]),
        ])
        report = import_rows(seeded, rows, "u1")

        assert report.updated == 1 and report.created == 0
        site = seeded.query(Site).filter(Site.id == existing["id"]).one()
        assert site.name == "GitHub"
        assert site.pricing == "paid"
        linked = [r[0] for r in seeded.query(SiteCategory.category_id).filter(SiteCategory.site_id == site.id)]
        assert linked == ["c1"]

    def test_new_tags_get_default_color(self, seeded) -> None:
        rows, _ = finalize_rows([
            ImportRow(name="Figma", url="https://figma.com", tags=[{"name": "design", "color": None}]),
        ])
        report = import_rows(seeded, rows, "u1")
        assert report.tags_created == 1
        assert seeded.query(Tag).filter(Tag.name == "design").one().color == "#D98BAC"

    def test_unpinning_clears_position(self, seeded, site_factory) -> None:
        site_factory("aaa", "aaa.com", is_pinned=True)
        site_factory("bbb", "bbb.com")
        rows, _ = finalize_rows([ImportRow(name="aaa", url="https://aaa.com", is_pinned=False)])
        import_rows(seeded, rows, "u1")

        aaa = seeded.query(Site).filter(Site.name == "aaa").one()
        assert aaa.is_pinned is False
        assert aaa.pin_position is None
        listed = ListQueryBuilder(seeded).list_sites(
            SiteFilters.from_params({"user_id": "u1", "sort_by": "name", "sort_order": "asc"})
        )
        assert [s["name"] for s in listed["data"]] == ["aaa", "bbb"]

    def test_pinned_rows_get_consecutive_positions(self, seeded, site_factory) -> None:
        site_factory("Zed", "zed.dev", is_pinned=True)
        rows, _ = finalize_rows([
            ImportRow(name="GitHub", url="https://github.com", is_pinned=True),
            ImportRow(name="Figma", url="https://figma.com", is_pinned=True),
        ])
        import_rows(seeded, rows, "u1")

        positions = {s.name: s.pin_position for s in seeded.query(Site)}
        assert positions["Zed"] == 1
        assert sorted([positions["GitHub"], positions["Figma"]]) == [2, 3]
