import pytest

from site_localizer import (
    TARGET_CUSTOM_DOMAIN,
    TARGET_PROJECT_SUBPATH,
    TARGET_SERVE,
    DeploymentTarget,
    normalize_css,
    normalize_document,
    normalize_reference,
    repo_name_from_env,
    resolve_target,
)

SUB = DeploymentTarget(TARGET_PROJECT_SUBPATH, "/myrepo/")
ROOT = DeploymentTarget(TARGET_CUSTOM_DOMAIN, "/")


def test_resolve_target():
    assert resolve_target(serve=True, repo_name="me/myrepo") == DeploymentTarget(TARGET_SERVE, "/")
    assert resolve_target(repo_name="me/myrepo") == SUB
    assert resolve_target(repo_name="myrepo") == SUB
    assert resolve_target(repo_name="me/me.github.io").base == "/"
    assert resolve_target() == ROOT


def test_repo_name_from_env():
    assert repo_name_from_env({"GITHUB_REPOSITORY": "me/site"}) == "me/site"
    assert repo_name_from_env({"SITE_REPO_NAME": "x", "GITHUB_REPOSITORY": "me/site"}) == "x"
    assert repo_name_from_env({}) is None


@pytest.mark.parametrize(
    "value, doc_dir, expected",
    [
        ("/assets/x.js", "", "/myrepo/assets/x.js"),
        ("/myrepo/assets/x.js", "", "/myrepo/assets/x.js"),
        ("/myrepo", "", "/myrepo"),
        ("/myrepository/x.js", "", "/myrepo/myrepository/x.js"),
        ("https://cdn.test/x.js", "", "https://cdn.test/x.js"),
        ("//cdn.test/x.js", "", "//cdn.test/x.js"),
        ("mailto:a@b.test", "", "mailto:a@b.test"),
        ("#top", "", "#top"),
        ("assets/x.js", "", "/myrepo/assets/x.js"),
        ("../assets/x.js?v=1", "about-us", "/myrepo/assets/x.js?v=1"),
        ("./", "about-us", "/myrepo/about-us/"),
        ("contact/", "", "/myrepo/contact/"),
    ],
)
def test_normalize_reference_subpath(value, doc_dir, expected):
    assert normalize_reference(value, SUB, doc_dir) == expected


def test_normalize_reference_root_base_leaves_root_relative():
    assert normalize_reference("/assets/x.js", ROOT) == "/assets/x.js"
    assert normalize_reference("assets/x.js", ROOT, "a/b") == "/a/b/assets/x.js"
    assert normalize_reference("https://example.org/x.js", ROOT) == "https://example.org/x.js"


def test_normalize_reference_is_idempotent():
    for v in ("/assets/x.js", "assets/x.js", "../x/", "https://a.test/"):
        once = normalize_reference(v, SUB, "docs")
        assert normalize_reference(once, SUB, "docs") == once


def test_normalize_document_rewrites_attributes_srcset_and_styles():
    html = (
        '<script src="/assets/js/a.js"></script>'
        "<img SRCSET='/assets/images/a.png 1x, assets/images/a@2x.png 2x' src=\"https://cdn.test/a.png\">"
        '<div style="background:url(\'/assets/images/bg.png\')"></div>'
        "<style>.x{background:url(/assets/images/y.png)}</style>"
        '<a href="/about-us/">about</a><a href="#top">top</a>'
    )
    out = normalize_document(html, SUB)
    assert '<script src="/myrepo/assets/js/a.js"></script>' in out
    assert "SRCSET='/myrepo/assets/images/a.png 1x, /myrepo/assets/images/a@2x.png 2x'" in out
    assert 'src="https://cdn.test/a.png"' in out
    assert "url('/myrepo/assets/images/bg.png')" in out
    assert "url(/myrepo/assets/images/y.png)" in out
    assert '<a href="/myrepo/about-us/">' in out
    assert '<a href="#top">' in out
    assert normalize_document(out, SUB) == out


def test_normalize_css_relative_to_stylesheet_dir():
    css = ".a{background:url(../images/a.png)} .b{background:url(data:image/png;base64,AA)}"
    out = normalize_css(css, SUB, "assets/css")
    assert out == ".a{background:url(/myrepo/assets/images/a.png)} .b{background:url(data:image/png;base64,AA)}"
