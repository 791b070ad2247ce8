from site_localizer import (
    KIND_ANCHOR,
    KIND_IMAGE,
    KIND_SCRIPT,
    KIND_STYLESHEET,
    KIND_VIDEO,
    extract_css_references,
    extract_references,
    iter_tags,
)

HOSTS = ("example.org",)


def refs(text, **kw):
    return list(extract_references(text, HOSTS, **kw))


def test_iter_tags_reports_value_spans():
    text = '<p>x</p><script defer SRC="https://cdn.test/a.js"></script>'
    tags = list(iter_tags(text, ("script",)))
    assert len(tags) == 1
    src = tags[0].attr("src")
    assert text[src.start : src.end] == "https://cdn.test/a.js"
    assert tags[0].attr("defer").value is None


def test_script_from_any_domain_but_not_modules_or_skipped():
    text = (
        '<script src="https://cdn.test/lib/a.js"></script>\n'
        "<script type='module' src='https://cdn.test/mod.js'></script>\n"
        '<script async src="https://www.googletagmanager.com/gtag/js?id=G-1"></script>\n'
        '<script src="/assets/js/local.js"></script>\n'
    )
    found = refs(text)
    assert [(r.kind, r.url) for r in found] == [(KIND_SCRIPT, "https://cdn.test/lib/a.js")]
    r = found[0]
    assert text[r.start : r.end] == r.raw_url
    assert r.before.endswith('src="')
    assert r.after == '">'


def test_custom_skip_domains():
    text = '<script src="https://cdn.test/a.js"></script>'
    assert refs(text, skip_domains=["cdn.test"]) == []


def test_stylesheet_with_id_in_any_attribute_order():
    text = (
        "<link rel='stylesheet' id='theme-css' href='https://example.org/wp/theme.css?ver=2' media='all' />"
        '<LINK HREF="https://example.org/plain.css" REL="stylesheet">'
        '<link rel="stylesheet" href="https://other.test/x.css">'
        '<link rel="preload" href="https://example.org/font.css">'
    )
    found = refs(text)
    assert [(r.kind, r.url, r.element_id) for r in found] == [
        (KIND_STYLESHEET, "https://example.org/wp/theme.css?ver=2", "theme-css"),
        (KIND_STYLESHEET, "https://example.org/plain.css", None),
    ]


def test_anchor_restricted_to_origin():
    text = (
        '<a href="https://example.org/about-us/">About</a>'
        '<a href="https://elsewhere.test/about/">Other</a>'
        '<a href="/contact/">Contact</a>'
    )
    found = refs(text)
    assert [(r.kind, r.url) for r in found] == [(KIND_ANCHOR, "https://example.org/about-us/")]


def test_anchor_only_for_page_like_paths():
    text = (
        '<a href="https://example.org/wp-content/uploads/brochure.pdf">PDF</a>'
        '<a href="https://example.org/contact.php?x=1">Contact</a>'
        '<a href="https://example.org/team.html">Team</a>'
    )
    assert [r.url for r in refs(text)] == [
        "https://example.org/contact.php?x=1",
        "https://example.org/team.html",
    ]


def test_inline_images_and_videos_by_extension():
    text = (
        '<img src="https://example.org/up/a.png" '
        'srcset="https://example.org/up/a-300.png 300w, https://example.org/up/a-600.JPG 600w">'
        '<div style="background:url(https://example.org/up/bg.webp)"></div>'
        '<video src="https://example.org/media/clip.mp4"></video>'
        '<img src="https://elsewhere.test/b.png">'
        '<a href="https://example.org/up/big.jpg">zoom</a>'
    )
    found = refs(text)
    assert [(r.kind, r.url) for r in found] == [
        (KIND_IMAGE, "https://example.org/up/a.png"),
        (KIND_IMAGE, "https://example.org/up/a-300.png"),
        (KIND_IMAGE, "https://example.org/up/a-600.JPG"),
        (KIND_IMAGE, "https://example.org/up/bg.webp"),
        (KIND_VIDEO, "https://example.org/media/clip.mp4"),
        (KIND_IMAGE, "https://example.org/up/big.jpg"),
    ]


def test_json_escaped_urls_are_canonicalized():
    text = '<script>var cfg = {"logo":"https:\\/\\/example.org\\/up\\/logo.svg"};</script>'
    found = refs(text)
    assert len(found) == 1
    assert found[0].raw_url == "https:\\/\\/example.org\\/up\\/logo.svg"
    assert found[0].url == "https://example.org/up/logo.svg"


def test_references_are_ordered_by_offset():
    text = (
        '<img src="https://example.org/a.png">'
        '<script src="https://cdn.test/b.js"></script>'
        '<img src="https://example.org/c.png">'
    )
    starts = [r.start for r in refs(text)]
    assert starts == sorted(starts)
    assert len(starts) == 3


def test_css_url_references_resolve_against_stylesheet():
    css = (
        ".a{background:url('../img/bg.png')}"
        ".b{background:url(data:image/png;base64,xx)}"
        '.c{src:url("fonts/x.woff2")}'
        ".d{background:url( https://example.org/up/d.gif )}"
    )
    found = list(extract_css_references(css, "https://example.org/theme/css/style.css", HOSTS))
    assert [(r.raw_url, r.url) for r in found] == [
        ("../img/bg.png", "https://example.org/theme/img/bg.png"),
        ("https://example.org/up/d.gif", "https://example.org/up/d.gif"),
    ]
    for r in found:
        assert css[r.start : r.end] == r.raw_url


def test_script_bodies_are_raw_text():
    text = (
        "<script>for(var i=0;i<n;i++){} // don't stop</script>\n"
        "<script src='https://cdn.test/lib/x.js'></script>\n"
        "<p>Our team's office</p><style>a<b{}</style>"
        '<a href="https://example.org/about/">a</a>'
    )
    assert [t.name for t in iter_tags(text)] == ["script", "script", "p", "style", "a"]
    assert [r.url for r in refs(text)] == [
        "https://cdn.test/lib/x.js",
        "https://example.org/about/",
    ]
