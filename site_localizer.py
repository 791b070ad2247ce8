#!/usr/bin/env python3
import argparse
import functools
import hashlib
import heapq
import html as html_lib
import logging
import os
import posixpath
import re
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from urllib.parse import quote, unquote, urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; SiteLocalizer/1.0; static-site migration)",
    "Accept": "*/*",
}

KIND_SCRIPT = "script"
KIND_STYLESHEET = "stylesheet"
KIND_IMAGE = "image"
KIND_ANCHOR = "anchor"
KIND_VIDEO = "video"

# Sub-directory of the assets dir for each downloadable kind.
KIND_DIRS = {
    KIND_SCRIPT: "js",
    KIND_STYLESHEET: "css",
    KIND_IMAGE: "images",
    KIND_VIDEO: "video",
}

IMAGE_EXTS = ("png", "jpg", "jpeg", "gif", "webp", "svg", "ico", "avif", "bmp")
VIDEO_EXTS = ("mp4", "webm", "ogv", "mov", "m4v")
# Origin link targets rewritten to site paths; "" is an extensionless route.
PAGE_EXTS = ("", ".html", ".htm", ".php")

# Extensions copied into the build output and eligible for content hashing.
STATIC_EXTS = {
    ".js",
    ".css",
    ".woff",
    ".woff2",
    ".ttf",
    ".otf",
    ".eot",
    ".json",
} | {"." + e for e in IMAGE_EXTS + VIDEO_EXTS}

REDIRECT_STATUSES = {301, 302, 303, 307, 308}
DEFAULT_SKIP_SCRIPT_DOMAINS = ("googletagmanager.com",)
DEFAULT_ANALYTICS_HOSTS = ("googletagmanager.com", "google-analytics.com")
WP_DISCOVERY_RELS = {"https://api.w.org/", "edituri", "wlwmanifest", "shortlink", "pingback"}

SKIP_DOMAINS_ENV = "SKIP_SCRIPT_DOMAINS"
REPO_NAME_ENVS = ("SITE_REPO_NAME", "GITHUB_REPOSITORY")

TARGET_SERVE = "serve"
TARGET_PROJECT_SUBPATH = "project-subpath"
TARGET_CUSTOM_DOMAIN = "custom-domain"

# Start tag with attributes; quoted values may contain '>'.
TAG_RE = re.compile(
    r"""<(?P<name>[a-zA-Z][a-zA-Z0-9:-]*)(?P<attrs>(?:"[^"]*"|'[^']*'|[^'">])*)>"""
)
ATTR_RE = re.compile(
    r"""(?P<name>[^\s"'=<>/`]+)"""
    r"""(?:\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<uq>[^\s"'=<>`]+)))?"""
)
CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
RAW_TEXT_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.S)
STYLE_BLOCK_RE = re.compile(
    r"(<style\b[^>]*>)(?P<body>.*?)</style\s*>", re.IGNORECASE | re.S
)
SCRIPT_CLOSE_RE = re.compile(r"</script\s*>", re.IGNORECASE)
COMMENT_RE = re.compile(r"<!--(?!\s*\[if)(?!\s*<!\[endif).*?-->", re.S)
HEAD_OPEN_RE = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)
TRAILING_WS_RE = re.compile(r"\s*")
SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")
GTAG_INLINE_RE = re.compile(r"\bgtag\s*\(|googletagmanager\.com", re.IGNORECASE)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')

# Attributes whose values are rebased by the base-path pass.
URL_ATTRS = ("src", "href", "poster", "data-src")
SRCSET_ATTRS = ("srcset", "data-srcset")


# -------------------- Errors --------------------


class LocalizerError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(LocalizerError):
    pass


class MissingInputError(LocalizerError):
    """A required input document does not exist. Aborts the run."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(f"input document not found: {self.path}")


class FetchError(LocalizerError):
    """Network failure, non-2xx status or timeout for a single URL."""

    def __init__(self, url: str, cause: object):
        self.url = url
        self.cause = cause
        super().__init__(f"{url}: {cause}")


class RedirectLoopError(FetchError):
    pass


class InsertionAnchorNotFoundError(LocalizerError):
    def __init__(self, anchor: str, document: Optional[Union[str, Path]] = None):
        self.anchor = anchor
        self.document = document
        where = f" in {document}" if document else ""
        super().__init__(f"insertion anchor {anchor!r} not found{where}")


class MissingSourceFileError(LocalizerError):
    def __init__(self, reference: str, candidates: Sequence[Path] = ()):
        self.reference = reference
        self.candidates = list(candidates)
        super().__init__(f"no source file for {reference}")


# -------------------- Settings --------------------


@dataclass
class Settings:
    origin: str = ""
    root: str = "."
    pages: List[str] = field(default_factory=lambda: ["index.html"])
    extra_hosts: List[str] = field(default_factory=list)

    # Fetching
    timeout: float = 15.0
    max_redirects: int = 5
    skip_script_domains: List[str] = field(
        default_factory=lambda: list(DEFAULT_SKIP_SCRIPT_DOMAINS)
    )

    # Layout
    assets_dir: str = "assets"
    link_style: str = "root"  # root | relative
    css_by_id: bool = False

    # Rewriting
    localize_css: bool = True
    cleanup: bool = True
    analytics_hosts: List[str] = field(
        default_factory=lambda: list(DEFAULT_ANALYTICS_HOSTS)
    )
    json_config_rewrites: Dict[str, str] = field(default_factory=dict)

    # Script-block sync
    canonical_page: Optional[str] = None
    head_block_start: Optional[str] = None
    head_block_end: Optional[str] = None
    head_sentinel: Optional[str] = None
    body_block_start: Optional[str] = None
    body_sentinel: Optional[str] = None
    head_script: Optional[str] = None

    # Bundles
    bundles: List[Dict[str, str]] = field(default_factory=list)
    bundle_dir: Optional[str] = None

    # Build
    dist_dir: str = "dist"
    hash_prefixes: List[str] = field(default_factory=lambda: ["assets/"])

    def origin_hosts(self) -> Tuple[str, ...]:
        hosts: List[str] = []
        if self.origin:
            host = urlparse(self.origin).hostname
            if host:
                hosts.append(host.lower())
        hosts.extend(h.strip().lower() for h in self.extra_hosts if h.strip())
        return tuple(dict.fromkeys(hosts))

    def root_path(self) -> Path:
        return Path(self.root).resolve()

    def block_markers(self) -> Optional["BlockMarkers"]:
        if not (self.head_block_start or self.body_block_start):
            return None
        return BlockMarkers(
            head_start=self.head_block_start,
            head_end=self.head_block_end,
            head_sentinel=self.head_sentinel,
            body_start=self.body_block_start,
            body_sentinel=self.body_sentinel,
        )

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, object], environ: Optional[Mapping[str, str]] = None
    ) -> "Settings":
        known = set(cls.__dataclass_fields__)
        kwargs = {}
        for k, v in data.items():
            key = k.replace("-", "_")
            if key not in known:
                logging.warning("unknown config key ignored: %s", k)
                continue
            kwargs[key] = v
        if isinstance(kwargs.get("pages"), str):
            kwargs["pages"] = [p.strip() for p in kwargs["pages"].split(",") if p.strip()]
        for key in ("extra_hosts", "skip_script_domains", "analytics_hosts"):
            if isinstance(kwargs.get(key), str):
                kwargs[key] = split_domain_list(kwargs[key])
        try:
            s = cls(**kwargs)
        except TypeError as e:
            raise ConfigError(str(e)) from e
        env = os.environ if environ is None else environ
        if env.get(SKIP_DOMAINS_ENV):
            s.skip_script_domains = split_domain_list(env[SKIP_DOMAINS_ENV])
        if s.link_style not in ("root", "relative"):
            raise ConfigError(f"link_style must be 'root' or 'relative': {s.link_style}")
        return s


# -------------------- Utils --------------------


def split_domain_list(value: str) -> List[str]:
    return [d.strip().lower() for d in value.split(",") if d.strip()]


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def write_bytes_atomic(path: Path, data: bytes) -> None:
    ensure_parent_dir(path)
    tmp = path.with_name(path.name + ".part")
    tmp.write_bytes(data)
    os.replace(tmp, path)


def read_text_file(path: Path, errors: str = "surrogateescape") -> str:
    # by default bytes that are not UTF-8 survive a read/write round trip unchanged
    with open(path, "r", encoding="utf-8", errors=errors, newline="") as f:
        return f.read()


def write_text_file(path: Path, text: str) -> None:
    ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write(text)


def short_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:8]


def canonical_url(raw: str) -> str:
    u = html_lib.unescape(raw.strip().replace("\\/", "/"))
    if u.startswith("//"):
        u = "https:" + u
    return u


def is_remote(u: str) -> bool:
    p = urlparse(u)
    return p.scheme in ("http", "https") and bool(p.netloc)


def host_matches(host: Optional[str], domains: Iterable[str]) -> bool:
    h = (host or "").lower()
    if not h:
        return False
    return any(h == d or h.endswith("." + d) for d in domains)


def on_hosts(u: str, hosts: Iterable[str]) -> bool:
    return (urlparse(u).hostname or "").lower() in set(hosts)


def asset_kind_for(u: str) -> Optional[str]:
    ext = os.path.splitext(urlparse(u).path)[1].lower().lstrip(".")
    if ext in IMAGE_EXTS:
        return KIND_IMAGE
    if ext in VIDEO_EXTS:
        return KIND_VIDEO
    return None


def is_page_url(u: str) -> bool:
    return os.path.splitext(urlparse(u).path)[1].lower() in PAGE_EXTS


def split_suffix(value: str) -> Tuple[str, str]:
    """Split a URL reference into path and its ?query#fragment suffix."""
    cut = len(value)
    for ch in ("?", "#"):
        i = value.find(ch)
        if i != -1:
            cut = min(cut, i)
    return value[:cut], value[cut:]


def relative_dir(path: Path, root: Path) -> str:
    rel = Path(os.path.relpath(path.parent, root)).as_posix()
    return "" if rel == "." else rel


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    # one attempt per fetch; redirects are followed by Fetcher itself
    retry = Retry(total=0, redirect=False, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


# -------------------- HTML tokenizer --------------------


@dataclass(frozen=True)
class Attr:
    name: str
    value: Optional[str]
    start: int
    end: int


@dataclass(frozen=True)
class Tag:
    name: str
    start: int
    end: int
    attrs: Tuple[Attr, ...]

    def attr(self, name: str) -> Optional[Attr]:
        for a in self.attrs:
            if a.name == name:
                return a
        return None

    def value(self, name: str) -> str:
        a = self.attr(name)
        return (a.value or "") if a is not None else ""


def iter_tags(text: str, names: Optional[Iterable[str]] = None) -> Iterator[Tag]:
    """Yield start tags in document order with absolute attribute value spans.

    Script and style bodies are raw text: a ``<`` inside them never starts a tag.
    """
    wanted = {n.lower() for n in names} if names is not None else None
    spans = raw_text_spans(text)
    pos = 0
    while True:
        m = TAG_RE.search(text, pos)
        if m is None:
            return
        skip_to = _span_end(m.start(), spans)
        if skip_to is not None:
            pos = skip_to
            continue
        pos = m.end()
        name = m.group("name").lower()
        if wanted is not None and name not in wanted:
            continue
        offset = m.start("attrs")
        attrs: List[Attr] = []
        for am in ATTR_RE.finditer(m.group("attrs")):
            group = next((g for g in ("dq", "sq", "uq") if am.group(g) is not None), None)
            if group is None:
                end = offset + am.end()
                attrs.append(Attr(am.group("name").lower(), None, end, end))
                continue
            attrs.append(
                Attr(
                    am.group("name").lower(),
                    am.group(group),
                    offset + am.start(group),
                    offset + am.end(group),
                )
            )
        yield Tag(name, m.start(), m.end(), tuple(attrs))


def raw_text_spans(text: str) -> List[Tuple[int, int]]:
    return [(m.start(), m.end()) for m in RAW_TEXT_RE.finditer(text)]


def _inside(pos: int, spans: Sequence[Tuple[int, int]]) -> bool:
    return any(s < pos < e for s, e in spans)


def _span_end(pos: int, spans: Sequence[Tuple[int, int]]) -> Optional[int]:
    for s, e in spans:
        if s < pos < e:
            return e
    return None


# -------------------- Extraction --------------------


@dataclass(frozen=True)
class Reference:
    kind: str
    raw_url: str
    url: str
    start: int
    end: int
    fragment: str
    before: str
    after: str
    attr: str
    element_id: Optional[str] = None
    source: Optional[Path] = None


def _attr_reference(
    kind: str,
    text: str,
    tag: Tag,
    attr: Attr,
    *,
    element_id: Optional[str] = None,
    source: Optional[Path] = None,
) -> Reference:
    value = attr.value or ""
    start = attr.start + (len(value) - len(value.lstrip()))
    end = attr.end - (len(value) - len(value.rstrip()))
    raw = text[start:end]
    return Reference(
        kind=kind,
        raw_url=raw,
        url=canonical_url(raw),
        start=start,
        end=end,
        fragment=text[tag.start : tag.end],
        before=text[tag.start : start],
        after=text[end : tag.end],
        attr=attr.name,
        element_id=element_id,
        source=source,
    )


def iter_tag_references(
    text: str,
    hosts: Sequence[str],
    *,
    skip_domains: Sequence[str] = DEFAULT_SKIP_SCRIPT_DOMAINS,
    source: Optional[Path] = None,
) -> Iterator[Reference]:
    for tag in iter_tags(text, ("script", "link", "a")):
        if tag.name == "script":
            src = tag.attr("src")
            if src is None or not src.value:
                continue
            if tag.value("type").strip().lower() == "module":
                continue
            u = canonical_url(src.value)
            if not is_remote(u):
                continue
            if host_matches(urlparse(u).hostname, skip_domains):
                logging.debug("skip script (domain in skip list): %s", u)
                continue
            yield _attr_reference(KIND_SCRIPT, text, tag, src, source=source)
        elif tag.name == "link":
            href = tag.attr("href")
            if href is None or not href.value:
                continue
            if "stylesheet" not in tag.value("rel").lower().split():
                continue
            u = canonical_url(href.value)
            if not is_remote(u) or not on_hosts(u, hosts):
                continue
            ident = tag.value("id").strip() or None
            yield _attr_reference(
                KIND_STYLESHEET, text, tag, href, element_id=ident, source=source
            )
        else:
            href = tag.attr("href")
            if href is None or not href.value:
                continue
            u = canonical_url(href.value)
            if not is_remote(u) or not on_hosts(u, hosts):
                continue
            if not is_page_url(u):
                # images and videos are picked up by the inline asset scan;
                # other files stay remote
                continue
            yield _attr_reference(KIND_ANCHOR, text, tag, href, source=source)


@functools.lru_cache(maxsize=32)
def asset_url_re(hosts: Tuple[str, ...]) -> re.Pattern:
    host_alt = "|".join(re.escape(h) for h in hosts)
    exts = "|".join(IMAGE_EXTS + VIDEO_EXTS)
    stop = r"\s\"'()<>\\,"
    return re.compile(
        r"(?:https?:)?(?:\\?/){2}(?:" + host_alt + r")"
        r"(?:\\?/)(?:\\/|[^" + stop + r"])*?"
        r"\.(?:" + exts + r")"
        r"(?:\?[^" + stop + r"]*)?"
        r"(?=[" + stop + r"]|$)",
        re.IGNORECASE,
    )


def iter_inline_asset_references(
    text: str, hosts: Sequence[str], *, source: Optional[Path] = None
) -> Iterator[Reference]:
    """Image and video URLs on the origin anywhere in the text, JSON-escaped or not."""
    if not hosts:
        return
    for m in asset_url_re(tuple(hosts)).finditer(text):
        raw = m.group(0)
        u = canonical_url(raw)
        kind = asset_kind_for(u)
        if kind is None:
            continue
        yield Reference(
            kind=kind,
            raw_url=raw,
            url=u,
            start=m.start(),
            end=m.end(),
            fragment=raw,
            before=text[max(0, m.start() - 1) : m.start()],
            after=text[m.end() : m.end() + 1],
            attr="text",
            source=source,
        )


def extract_references(
    text: str,
    hosts: Sequence[str],
    *,
    skip_domains: Sequence[str] = DEFAULT_SKIP_SCRIPT_DOMAINS,
    source: Optional[Path] = None,
) -> Iterator[Reference]:
    """Lazily yield every remote reference of a document, ordered by offset."""
    return heapq.merge(
        iter_tag_references(text, hosts, skip_domains=skip_domains, source=source),
        iter_inline_asset_references(text, hosts, source=source),
        key=lambda r: r.start,
    )


def extract_css_references(
    css_text: str,
    base_url: Optional[str],
    hosts: Sequence[str],
    *,
    source: Optional[Path] = None,
) -> Iterator[Reference]:
    """url(...) references of a stylesheet that resolve to an origin image or video."""
    for m in CSS_URL_RE.finditer(css_text):
        value = m.group(2)
        raw = value.strip()
        if not raw or raw.startswith(("data:", "#")):
            continue
        u = urljoin(base_url, raw) if base_url else canonical_url(raw)
        if not is_remote(u) or not on_hosts(u, hosts):
            continue
        kind = asset_kind_for(u)
        if kind is None:
            continue
        start = m.start(2) + (len(value) - len(value.lstrip()))
        end = start + len(raw)
        yield Reference(
            kind=kind,
            raw_url=raw,
            url=u,
            start=start,
            end=end,
            fragment=m.group(0),
            before=css_text[m.start() : start],
            after=css_text[end : m.end()],
            attr="url()",
            source=source,
        )


# -------------------- Fetcher --------------------


class Fetcher:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout: float = 15.0,
        max_redirects: int = 5,
    ):
        self.session = session if session is not None else build_session()
        self.timeout = timeout
        self.max_redirects = max_redirects

    def fetch(self, url: str) -> bytes:
        current = url
        visited = {url}
        for _ in range(self.max_redirects + 1):
            try:
                resp = self.session.get(
                    current, timeout=self.timeout, allow_redirects=False
                )
            except requests.Timeout as e:
                raise FetchError(url, f"timeout after {self.timeout:g}s") from e
            except requests.RequestException as e:
                raise FetchError(url, e) from e
            status = resp.status_code
            if status in REDIRECT_STATUSES:
                location = resp.headers.get("Location")
                resp.close()
                if not location:
                    raise FetchError(url, f"HTTP {status} without Location")
                target = urljoin(current, location)
                if target in visited:
                    raise RedirectLoopError(url, f"redirect loop at {target}")
                visited.add(target)
                logging.debug("redirect %s -> %s", current, target)
                current = target
                continue
            if not 200 <= status < 300:
                resp.close()
                raise FetchError(url, f"HTTP {status}")
            return resp.content
        raise RedirectLoopError(url, f"more than {self.max_redirects} redirects")


# -------------------- Local paths --------------------


@dataclass(frozen=True)
class LocalPath:
    file_path: Path
    asset_path: str


def url_path_segments(u: str) -> List[str]:
    path = urlparse(u).path
    return [sanitize_filename(unquote(seg)) for seg in path.split("/") if seg]


def script_filename(u: str) -> str:
    segs = url_path_segments(u)
    if not segs:
        return "script.js"
    base = "-".join(segs)
    return base if base.lower().endswith(".js") else base + ".js"


def local_path_for(
    u: str,
    kind: str,
    root: Path,
    *,
    assets_dir: str = "assets",
    element_id: Optional[str] = None,
) -> LocalPath:
    """Map a remote URL to its vendored location. Pure in its arguments."""
    if kind == KIND_ANCHOR:
        p = urlparse(u)
        site_path = p.path or "/"
        if p.query:
            site_path += "?" + p.query
        if p.fragment:
            site_path += "#" + p.fragment
        return LocalPath(root.joinpath(*url_path_segments(u)), site_path)
    if kind not in KIND_DIRS:
        raise ValueError(f"unknown reference kind: {kind}")
    base = posixpath.join(assets_dir.strip("/"), KIND_DIRS[kind])
    if kind == KIND_SCRIPT:
        rel = posixpath.join(base, script_filename(u))
    elif kind == KIND_STYLESHEET and element_id:
        rel = posixpath.join(base, sanitize_filename(element_id) + ".css")
    else:
        segs = url_path_segments(u) or [
            "style.css" if kind == KIND_STYLESHEET else "file"
        ]
        rel = posixpath.join(base, *segs)
    return LocalPath(root.joinpath(*rel.split("/")), rel)


def web_path_for(
    local: LocalPath, document: Path, root: Path, link_style: str = "root"
) -> str:
    web = "/" + local.asset_path
    if link_style == "relative":
        web = posixpath.relpath(web, "/" + relative_dir(document, root))
    return quote(web, safe="/-._~!$&()*+,;=:@")


@dataclass(frozen=True)
class ResourceEntry:
    url: str
    kind: str
    local: LocalPath

    def href_for(self, document: Path, root: Path, link_style: str = "root") -> str:
        if self.kind == KIND_ANCHOR:
            return self.local.asset_path
        return web_path_for(self.local, document, root, link_style)


class ResourceMap(Mapping[str, ResourceEntry]):
    """Read-only map from referenced URL to its vendored copy."""

    def __init__(self, entries: Iterable[ResourceEntry] = ()):
        data: Dict[str, ResourceEntry] = {}
        for e in entries:
            data.setdefault(e.url, e)
        self._data = MappingProxyType(data)

    def __getitem__(self, url: str) -> ResourceEntry:
        return self._data[url]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


@dataclass
class RunReport:
    fetched: List[str] = field(default_factory=list)
    cached: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    updated: List[Path] = field(default_factory=list)
    skipped_steps: List[Tuple[Path, str]] = field(default_factory=list)
    leftovers: Dict[str, List[str]] = field(default_factory=dict)


def build_resource_map(
    references: Iterable[Reference],
    root: Path,
    fetcher: Fetcher,
    *,
    assets_dir: str = "assets",
    css_by_id: bool = False,
    report: Optional[RunReport] = None,
) -> ResourceMap:
    """Download every distinct reference not already on disk and map it.

    References whose fetch fails are left out of the map, so the documents
    keep pointing at the remote URL for them.
    """
    report = report if report is not None else RunReport()
    entries: List[ResourceEntry] = []
    seen = set()
    claimed: Dict[str, str] = {}
    for ref in references:
        if ref.url in seen:
            continue
        seen.add(ref.url)
        local = local_path_for(
            ref.url,
            ref.kind,
            root,
            assets_dir=assets_dir,
            element_id=ref.element_id if css_by_id else None,
        )
        if ref.kind == KIND_ANCHOR:
            entries.append(ResourceEntry(ref.url, ref.kind, local))
            continue
        other = claimed.setdefault(local.asset_path, ref.url)
        if other != ref.url:
            logging.warning(
                "local path collision: %s and %s -> %s", other, ref.url, local.asset_path
            )
        if local.file_path.exists():
            logging.debug("cached: %s -> %s", ref.url, local.asset_path)
            report.cached.append(ref.url)
        else:
            try:
                data = fetcher.fetch(ref.url)
            except FetchError as e:
                logging.warning("failed %s: %s", e.url, e.cause)
                report.failed.append((e.url, str(e.cause)))
                continue
            write_bytes_atomic(local.file_path, data)
            logging.info("downloaded asset: %s -> %s", ref.url, local.asset_path)
            report.fetched.append(ref.url)
        entries.append(ResourceEntry(ref.url, ref.kind, local))
    return ResourceMap(entries)


# -------------------- Rewriters --------------------


@dataclass(frozen=True)
class Patch:
    start: int
    end: int
    text: str


def apply_patches(text: str, patches: Iterable[Patch]) -> str:
    """Apply non-overlapping patches in one left-to-right pass."""
    out: List[str] = []
    pos = 0
    for p in sorted(patches, key=lambda p: (p.start, p.end)):
        if p.start < pos:
            logging.debug("overlapping patch at %d dropped", p.start)
            continue
        out.append(text[pos : p.start])
        out.append(p.text)
        pos = p.end
    out.append(text[pos:])
    return "".join(out)


def _overlaps(p: Patch, others: Sequence[Patch]) -> bool:
    return any(p.start < o.end and o.start < p.end for o in others)


def _through_trailing_ws(text: str, end: int) -> int:
    return TRAILING_WS_RE.match(text, end).end()


def _removal(text: str, start: int, end: int) -> Patch:
    return Patch(start, _through_trailing_ws(text, end), "")


def plan_rewrites(
    references: Iterable[Reference],
    resource_map: Mapping[str, ResourceEntry],
    document: Path,
    root: Path,
    link_style: str = "root",
) -> List[Patch]:
    patches = []
    for ref in references:
        entry = resource_map.get(ref.url)
        if entry is None:
            continue
        href = entry.href_for(document, root, link_style)
        if "\\/" in ref.raw_url:
            href = href.replace("/", "\\/")
        if href != ref.raw_url:
            patches.append(Patch(ref.start, ref.end, href))
    return patches


def cleanup_patches(
    text: str,
    hosts: Sequence[str],
    analytics_hosts: Sequence[str] = DEFAULT_ANALYTICS_HOSTS,
) -> List[Patch]:
    """Removals for analytics, generator and discovery markup and HTML comments."""
    patches: List[Patch] = []
    for tag in iter_tags(text, ("link", "meta", "script")):
        if tag.name == "meta":
            if tag.value("name").strip().lower() == "generator":
                patches.append(_removal(text, tag.start, tag.end))
        elif tag.name == "link":
            rels = tag.value("rel").strip().lower().split()
            href = canonical_url(tag.value("href"))
            if "alternate" in rels and on_hosts(href, hosts):
                patches.append(_removal(text, tag.start, tag.end))
            elif {"dns-prefetch", "preconnect"} & set(rels) and host_matches(
                urlparse(href).hostname, analytics_hosts
            ):
                patches.append(_removal(text, tag.start, tag.end))
            elif WP_DISCOVERY_RELS & set(rels):
                patches.append(_removal(text, tag.start, tag.end))
        else:
            close = SCRIPT_CLOSE_RE.search(text, tag.end)
            if close is None:
                continue
            src = tag.value("src")
            if src:
                dead = host_matches(urlparse(canonical_url(src)).hostname, analytics_hosts)
            else:
                dead = tag.value("id") == "google_gtagjs-js-after" or bool(
                    GTAG_INLINE_RE.search(text, tag.end, close.start())
                )
            if dead:
                patches.append(_removal(text, tag.start, close.end()))
    raw_spans = raw_text_spans(text)
    for m in COMMENT_RE.finditer(text):
        if _inside(m.start(), raw_spans):
            continue
        patches.append(_removal(text, m.start(), m.end()))
    return patches


@functools.lru_cache(maxsize=32)
def json_config_re(keys: Tuple[str, ...], hosts: Tuple[str, ...]) -> re.Pattern:
    key_alt = "|".join(re.escape(k) for k in keys)
    host_alt = "|".join(re.escape(h) for h in hosts)
    return re.compile(
        r'"(?P<key>' + key_alt + r')"\s*:\s*"'
        r"(?P<value>(?:https?:)?(?:\\?/){2}(?:" + host_alt + r')(?:\\.|[^"\\])*)"'
    )


def json_config_patches(
    text: str, rewrites: Mapping[str, str], hosts: Sequence[str]
) -> List[Patch]:
    """Replace origin URLs held in inline JSON config values by key."""
    if not rewrites or not hosts:
        return []
    pattern = json_config_re(tuple(rewrites), tuple(hosts))
    return [
        Patch(m.start("value"), m.end("value"), rewrites[m.group("key")])
        for m in pattern.finditer(text)
    ]


def rewrite_document(
    text: str,
    resource_map: Mapping[str, ResourceEntry],
    document: Path,
    settings: Settings,
    references: Optional[Iterable[Reference]] = None,
) -> str:
    """Substitute mapped references and drop dead markup in a single pass."""
    root = settings.root_path()
    hosts = settings.origin_hosts()
    if references is None:
        references = extract_references(
            text, hosts, skip_domains=settings.skip_script_domains, source=document
        )
    priority: List[Patch] = []
    if settings.cleanup:
        priority.extend(cleanup_patches(text, hosts, settings.analytics_hosts))
    priority.extend(json_config_patches(text, settings.json_config_rewrites, hosts))
    rewrites = [
        p
        for p in plan_rewrites(references, resource_map, document, root, settings.link_style)
        if not _overlaps(p, priority)
    ]
    return apply_patches(text, priority + rewrites)


def rebase_references(html: str, from_dir: str, to_dir: str) -> str:
    """Re-point document-relative src/href values from one directory to another."""
    if from_dir == to_dir:
        return html
    patches = []
    for tag in iter_tags(html):
        for name in ("src", "href"):
            a = tag.attr(name)
            if a is None or not a.value:
                continue
            v = a.value
            if v.startswith(("/", "#", "?")) or SCHEME_RE.match(v):
                continue
            path, suffix = split_suffix(v)
            target = posixpath.normpath(posixpath.join("/", from_dir, path))
            rel = posixpath.relpath(target, "/" + to_dir)
            if path.endswith("/") and not rel.endswith("/"):
                rel += "/"
            if rel + suffix != v:
                patches.append(Patch(a.start, a.end, rel + suffix))
    return apply_patches(html, patches)


# -------------------- Script-block sync --------------------


@dataclass(frozen=True)
class BlockMarkers:
    head_start: Optional[str] = None
    head_end: Optional[str] = None
    head_sentinel: Optional[str] = None
    body_start: Optional[str] = None
    body_sentinel: Optional[str] = None


@dataclass(frozen=True)
class ScriptBlocks:
    head: str = ""
    body: str = ""


def _tag_start(html: str, marker_pos: int) -> int:
    i = html.rfind("<", 0, marker_pos + 1)
    return i if i != -1 else marker_pos


def extract_script_blocks(html: str, markers: BlockMarkers) -> ScriptBlocks:
    """Cut the shared head and footer script blocks out of the canonical page.

    The head block runs from the tag holding ``head_start`` through the
    ``</script>`` closing the tag holding ``head_end``. The body block runs from
    the tag holding ``body_start`` through the last ``</script>`` before
    ``</body>``.
    """
    head = ""
    if markers.head_start:
        i = html.find(markers.head_start)
        if i != -1:
            start = _tag_start(html, i)
            j = html.find(markers.head_end, i) if markers.head_end else i
            close = SCRIPT_CLOSE_RE.search(html, j) if j != -1 else None
            if close is not None:
                head = html[start : close.end()].strip()
    body = ""
    if markers.body_start:
        k = html.find(markers.body_start)
        body_close = BODY_CLOSE_RE.search(html, k if k != -1 else 0)
        if k != -1 and body_close is not None:
            start = _tag_start(html, k)
            closes = list(SCRIPT_CLOSE_RE.finditer(html, start, body_close.start()))
            if closes:
                body = html[start : closes[-1].end()].strip()
    if markers.head_start and not head:
        logging.warning("could not extract head scripts (%s)", markers.head_start)
    if markers.body_start and not body:
        logging.warning("could not extract body scripts (%s)", markers.body_start)
    return ScriptBlocks(head, body)


def sync_script_blocks(
    html: str,
    blocks: ScriptBlocks,
    markers: BlockMarkers,
    document: Optional[Path] = None,
) -> str:
    """Insert missing shared blocks before </head> and </body>.

    Raises InsertionAnchorNotFoundError before changing anything when a needed
    anchor is missing.
    """
    patches = []
    head_sentinel = markers.head_sentinel or markers.head_start
    if blocks.head and head_sentinel and head_sentinel not in html:
        m = HEAD_CLOSE_RE.search(html)
        if m is None:
            raise InsertionAnchorNotFoundError("</head>", document)
        patches.append(Patch(m.start(), m.start(), "\t" + blocks.head + "\n"))
    body_sentinel = markers.body_sentinel or markers.body_start
    if blocks.body and body_sentinel and body_sentinel not in html:
        m = BODY_CLOSE_RE.search(html)
        if m is None:
            raise InsertionAnchorNotFoundError("</body>", document)
        patches.append(Patch(m.start(), m.start(), "\t" + blocks.body + "\n"))
    return apply_patches(html, patches)


def ensure_head_script(html: str, document_rel: str, src: str) -> str:
    """Keep exactly one <script src=src> right after <head>, prefixed per depth."""
    depth = len([p for p in posixpath.dirname(document_rel).split("/") if p])
    tag = f'<script src="{"../" * depth}{src}"></script>'
    existing = re.compile(
        r"\s*<script\b[^>]*\bsrc=[\"'][^\"']*" + re.escape(src) + r"[\"'][^>]*>\s*</script\s*>",
        re.IGNORECASE,
    )
    stripped = existing.sub("", html)
    m = HEAD_OPEN_RE.search(stripped)
    if m is None:
        raise InsertionAnchorNotFoundError("<head>", document_rel)
    return stripped[: m.end()] + "\n\t" + tag + stripped[m.end() :]


# -------------------- Base paths --------------------


@dataclass(frozen=True)
class DeploymentTarget:
    name: str
    base: str = "/"


def repo_name_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if environ is None else environ
    for key in REPO_NAME_ENVS:
        if env.get(key):
            return env[key]
    return None


def resolve_target(serve: bool = False, repo_name: Optional[str] = None) -> DeploymentTarget:
    if serve:
        return DeploymentTarget(TARGET_SERVE, "/")
    name = (repo_name or "").strip().strip("/").split("/")[-1]
    # <user>.github.io repositories are served from the domain root
    if name and not name.lower().endswith(".github.io"):
        return DeploymentTarget(TARGET_PROJECT_SUBPATH, f"/{name}/")
    return DeploymentTarget(TARGET_CUSTOM_DOMAIN, "/")


def normalize_reference(value: str, target: DeploymentTarget, document_dir: str = "") -> str:
    v = value.strip()
    if not v or v.startswith(("#", "?", "//")) or SCHEME_RE.match(v):
        return value
    base = target.base
    if v.startswith("/"):
        if v.startswith(base) or v == base.rstrip("/"):
            return value
        return base.rstrip("/") + v
    path, suffix = split_suffix(v)
    joined = posixpath.normpath(posixpath.join(base, document_dir, path or "."))
    if (path.endswith("/") or path in ("", ".")) and not joined.endswith("/"):
        joined += "/"
    return joined + suffix


def _srcset_patch(attr: Attr, fn: Callable[[str], str]) -> Optional[Patch]:
    parts = []
    for cand in SRCSET_SPLIT_RE.split((attr.value or "").strip()):
        if not cand:
            continue
        comp = WS_RE.split(cand.strip())
        parts.append(" ".join([fn(comp[0])] + comp[1:]))
    new = ", ".join(parts)
    return Patch(attr.start, attr.end, new) if new != attr.value else None


def _css_url_patches(css: str, offset: int, fn: Callable[[str], str]) -> List[Patch]:
    patches = []
    for m in CSS_URL_RE.finditer(css):
        u = m.group(2).strip()
        if u.startswith("data:"):
            continue
        nu = fn(u)
        if nu != u:
            start = offset + m.start(2) + (len(m.group(2)) - len(m.group(2).lstrip()))
            patches.append(Patch(start, start + len(u), nu))
    return patches


def html_url_patches(
    html: str, fn: Callable[[str], str], *, skip_modules: bool = False
) -> List[Patch]:
    """Patches mapping every URL-bearing attribute, style and <style> url() through fn."""
    patches: List[Patch] = []
    for tag in iter_tags(html):
        if skip_modules and tag.name == "script" and tag.value("type").lower() == "module":
            continue
        for name in URL_ATTRS:
            a = tag.attr(name)
            if a is None or not a.value:
                continue
            nv = fn(a.value)
            if nv != a.value:
                patches.append(Patch(a.start, a.end, nv))
        for name in SRCSET_ATTRS:
            a = tag.attr(name)
            if a is not None and a.value:
                p = _srcset_patch(a, fn)
                if p is not None:
                    patches.append(p)
        style = tag.attr("style")
        if style is not None and style.value:
            patches.extend(_css_url_patches(style.value, style.start, fn))
    for m in STYLE_BLOCK_RE.finditer(html):
        patches.extend(_css_url_patches(m.group("body"), m.start("body"), fn))
    return patches


def normalize_document(html: str, target: DeploymentTarget, document_dir: str = "") -> str:
    return apply_patches(
        html, html_url_patches(html, lambda v: normalize_reference(v, target, document_dir))
    )


def normalize_css(css: str, target: DeploymentTarget, css_dir: str = "") -> str:
    return apply_patches(
        css, _css_url_patches(css, 0, lambda v: normalize_reference(v, target, css_dir))
    )


def iter_site_files(root: Path, exts: Iterable[str] = (".html", ".css")) -> List[Path]:
    wanted = {e.lower() for e in exts}
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in wanted)


def normalize_tree(out_root: Path, target: DeploymentTarget) -> List[Path]:
    """Rebase every HTML and CSS file of a built tree onto the target base."""
    changed = []
    for path in iter_site_files(out_root):
        text = read_text_file(path)
        doc_dir = relative_dir(path, out_root)
        if path.suffix.lower() == ".css":
            new = normalize_css(text, target, doc_dir)
        else:
            new = normalize_document(text, target, doc_dir)
        if new != text:
            write_text_file(path, new)
            changed.append(path)
    logging.info("normalized %d file(s) for %s (base %s)", len(changed), target.name, target.base)
    return changed


# -------------------- Content hashing --------------------


@dataclass(frozen=True)
class HashedAsset:
    source_path: Path
    content_hash: str
    hashed_public_path: str


def site_relative(value: str, target: DeploymentTarget, document_dir: str = "") -> Optional[Tuple[str, str]]:
    """(path under the site root, ?query#fragment) for a local reference, else None."""
    resolved = normalize_reference(value, target, document_dir)
    if resolved.startswith("//") or SCHEME_RE.match(resolved):
        return None
    path, suffix = split_suffix(resolved)
    if not path.startswith(target.base):
        return None
    return unquote(path[len(target.base) :]), suffix


class AssetHasher:
    """Copies referenced static files to ``<name>-<hash>.<ext>`` in the output tree.

    Entries are memoized by resolved source path, so every spelling of the same
    file shares one hashed output.
    """

    def __init__(self, out_root: Path, source_roots: Sequence[Path]):
        self.out_root = out_root
        self.source_roots = list(source_roots)
        self._memo: Dict[Path, HashedAsset] = {}

    @property
    def entries(self) -> List[HashedAsset]:
        return list(self._memo.values())

    def _source_for(self, rel: str) -> Path:
        candidates = [r.joinpath(*rel.split("/")) for r in self.source_roots]
        for c in candidates:
            if c.is_file():
                return c.resolve()
        raise MissingSourceFileError(rel, candidates)

    def hashed_path_for(self, rel: str) -> HashedAsset:
        source = self._source_for(rel)
        entry = self._memo.get(source)
        if entry is not None:
            return entry
        data = source.read_bytes()
        digest = short_hash(data)
        stem, ext = posixpath.splitext(posixpath.basename(rel))
        if stem.endswith("-" + digest):
            hashed_rel = rel
        else:
            hashed_rel = posixpath.join(posixpath.dirname(rel), f"{stem}-{digest}{ext}")
        out = self.out_root.joinpath(*hashed_rel.split("/"))
        if not out.exists():
            write_bytes_atomic(out, data)
            logging.debug("hashed %s -> %s", rel, hashed_rel)
        entry = HashedAsset(source, digest, hashed_rel)
        self._memo[source] = entry
        return entry


def hash_and_relink(
    out_root: Path,
    target: DeploymentTarget,
    source_roots: Sequence[Path],
    *,
    prefixes: Sequence[str] = ("assets/",),
) -> Tuple[List[HashedAsset], List[str]]:
    """Content-hash every static file referenced from the tree and relink it.

    Returns the hashed entries and the references whose source was missing.
    """
    hasher = AssetHasher(out_root, source_roots)
    missing: List[str] = []

    def relink(doc_dir: str) -> Callable[[str], str]:
        def fn(value: str) -> str:
            loc = site_relative(value, target, doc_dir)
            if loc is None:
                return value
            rel, suffix = loc
            if not rel.startswith(tuple(prefixes)):
                return value
            if posixpath.splitext(rel)[1].lower() not in STATIC_EXTS:
                return value
            try:
                entry = hasher.hashed_path_for(rel)
            except MissingSourceFileError as e:
                logging.warning("cannot hash %s: source file missing", e.reference)
                missing.append(value)
                return value
            return target.base + quote(entry.hashed_public_path, safe="/-._~!$&()*+,;=:@") + suffix

        return fn

    # snapshot first; hashed copies land in the same tree.
    # stylesheets go first so their hashed copies carry relinked url()s
    files = sorted(iter_site_files(out_root), key=lambda p: p.suffix.lower() != ".css")
    for path in files:
        text = read_text_file(path)
        fn = relink(relative_dir(path, out_root))
        if path.suffix.lower() == ".css":
            new = apply_patches(text, _css_url_patches(text, 0, fn))
        else:
            new = apply_patches(text, html_url_patches(text, fn, skip_modules=True))
        if new != text:
            write_text_file(path, new)
    logging.info("hashed %d asset(s), %d missing", len(hasher.entries), len(missing))
    return hasher.entries, missing


# -------------------- Mirror --------------------


def mirror_tree(
    src_root: Path,
    dst_root: Path,
    include: Optional[Callable[[Path], bool]] = None,
) -> List[Path]:
    """Copy files under src_root whose relative path passes include."""
    dst_resolved = dst_root.resolve()
    copied = []
    for dirpath, dirnames, filenames in os.walk(src_root):
        d = Path(dirpath)
        dirnames[:] = sorted(
            n
            for n in dirnames
            if not n.startswith(".") and (d / n).resolve() != dst_resolved
        )
        for name in sorted(filenames):
            src = d / name
            rel = src.relative_to(src_root)
            if include is not None and not include(rel):
                continue
            dst = dst_root / rel
            ensure_parent_dir(dst)
            shutil.copy2(src, dst)
            copied.append(dst)
    return copied


# -------------------- Bundles --------------------


@dataclass(frozen=True)
class BundleEntry:
    url: str
    filename: str
    sha256: Optional[str] = None


def load_bundle_manifest(items: Iterable[Mapping[str, str]]) -> List[BundleEntry]:
    entries = []
    for item in items:
        url = item.get("url")
        if not url:
            raise ConfigError(f"bundle entry without url: {dict(item)}")
        filename = item.get("filename") or posixpath.basename(urlparse(url).path)
        if not filename:
            raise ConfigError(f"bundle entry without filename: {url}")
        entries.append(BundleEntry(url, filename, item.get("sha256")))
    return entries


def fetch_bundles(
    entries: Iterable[BundleEntry],
    dest_dir: Path,
    fetcher: Fetcher,
    report: Optional[RunReport] = None,
) -> RunReport:
    report = report if report is not None else RunReport()
    for e in entries:
        out = dest_dir / sanitize_filename(e.filename)
        if out.exists():
            logging.info("%s ... (exists)", e.filename)
            report.cached.append(e.url)
            continue
        try:
            data = fetcher.fetch(e.url)
        except FetchError as err:
            logging.warning("failed %s: %s", err.url, err.cause)
            report.failed.append((err.url, str(err.cause)))
            continue
        if e.sha256 and hashlib.sha256(data).hexdigest() != e.sha256.lower():
            logging.warning("checksum mismatch for %s, not saved", e.url)
            report.failed.append((e.url, "sha256 mismatch"))
            continue
        write_bytes_atomic(out, data)
        logging.info("downloaded bundle: %s -> %s", e.url, out)
        report.fetched.append(e.url)
    return report


# -------------------- Audit --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def find_remote_leftovers(html: str, hosts: Sequence[str]) -> List[str]:
    """src/href/srcset values still pointing at the origin."""
    soup = bs4_parse(html)
    found: List[str] = []
    for tag in soup.find_all(True):
        for a in ("src", "href", "poster"):
            v = tag.get(a)
            if isinstance(v, str) and is_remote(canonical_url(v)) and on_hosts(canonical_url(v), hosts):
                found.append(v)
        srcset = tag.get("srcset")
        if isinstance(srcset, str):
            for cand in SRCSET_SPLIT_RE.split(srcset.strip()):
                u = WS_RE.split(cand.strip())[0] if cand.strip() else ""
                if u and on_hosts(canonical_url(u), hosts):
                    found.append(u)
    return list(dict.fromkeys(found))


def audit_documents(paths: Iterable[Path], hosts: Sequence[str]) -> Dict[str, List[str]]:
    result = {}
    for p in paths:
        left = find_remote_leftovers(read_text_file(p, errors="replace"), hosts)
        if left:
            result[str(p)] = left
    return result


# -------------------- Pipeline --------------------


def localize_css_file(
    css_path: Path,
    css_url: str,
    root: Path,
    fetcher: Fetcher,
    settings: Settings,
    report: Optional[RunReport] = None,
) -> bool:
    """Vendor the images/videos one stylesheet points at and relink them."""
    text = read_text_file(css_path)
    refs = []
    for ref in extract_css_references(
        text, css_url, settings.origin_hosts(), source=css_path
    ):
        if not is_remote(ref.raw_url) and not ref.raw_url.startswith("//"):
            path = unquote(split_suffix(ref.raw_url)[0])
            if path.startswith("/"):
                local = root.joinpath(*[p for p in path.split("/") if p])
            else:
                local = css_path.parent / path
            if local.exists():
                continue
        refs.append(ref)
    if not refs:
        return False
    rmap = build_resource_map(
        refs, root, fetcher, assets_dir=settings.assets_dir, report=report
    )
    patches = plan_rewrites(refs, rmap, css_path, root, "relative")
    new = apply_patches(text, patches)
    if new == text:
        return False
    write_text_file(css_path, new)
    logging.info("updated stylesheet: %s", os.path.relpath(css_path, root))
    return True


def log_summary(report: RunReport) -> None:
    logging.info(
        "done: %d downloaded, %d cached, %d failed, %d document(s) updated",
        len(report.fetched),
        len(report.cached),
        len(report.failed),
        len(report.updated),
    )
    for url, cause in report.failed:
        logging.warning("  skipped %s (%s)", url, cause)
    for doc, reason in report.skipped_steps:
        logging.warning("  %s: %s", doc, reason)
    for doc, urls in report.leftovers.items():
        logging.info("  %s still references %d remote URL(s)", doc, len(urls))


def input_documents(settings: Settings) -> List[Path]:
    root = settings.root_path()
    names = list(settings.pages)
    if settings.canonical_page and settings.canonical_page not in names:
        names.insert(0, settings.canonical_page)
    docs = [root / n for n in names]
    for d in docs:
        if not d.is_file():
            raise MissingInputError(d)
    return docs


def localize_site(settings: Settings, fetcher: Optional[Fetcher] = None) -> RunReport:
    """Vendor every remote reference of the site's pages and rewrite them."""
    root = settings.root_path()
    docs = input_documents(settings)
    hosts = settings.origin_hosts()
    fetcher = fetcher or Fetcher(
        build_session(), timeout=settings.timeout, max_redirects=settings.max_redirects
    )
    report = RunReport()

    originals = {d: read_text_file(d) for d in docs}
    refs: List[Reference] = []
    for d in docs:
        refs.extend(
            extract_references(
                originals[d], hosts, skip_domains=settings.skip_script_domains, source=d
            )
        )
    logging.info("found %d reference(s) in %d document(s)", len(refs), len(docs))

    resource_map = build_resource_map(
        refs,
        root,
        fetcher,
        assets_dir=settings.assets_dir,
        css_by_id=settings.css_by_id,
        report=report,
    )

    if settings.localize_css:
        for entry in resource_map.values():
            if entry.kind == KIND_STYLESHEET and entry.local.file_path.exists():
                localize_css_file(entry.local.file_path, entry.url, root, fetcher, settings, report)

    texts = {}
    for d in docs:
        d_refs = [r for r in refs if r.source == d]
        texts[d] = rewrite_document(originals[d], resource_map, d, settings, d_refs)

    markers = settings.block_markers()
    if markers is not None and settings.canonical_page:
        canonical = root / settings.canonical_page
        blocks = extract_script_blocks(texts[canonical], markers)
        for d in docs:
            if d == canonical:
                continue
            try:
                block_set = blocks
                if settings.link_style == "relative":
                    src_dir, dst_dir = relative_dir(canonical, root), relative_dir(d, root)
                    block_set = ScriptBlocks(
                        rebase_references(blocks.head, src_dir, dst_dir),
                        rebase_references(blocks.body, src_dir, dst_dir),
                    )
                texts[d] = sync_script_blocks(texts[d], block_set, markers, d)
            except InsertionAnchorNotFoundError as e:
                logging.warning("script sync skipped: %s", e)
                report.skipped_steps.append((d, str(e)))

    if settings.head_script:
        for d in docs:
            try:
                texts[d] = ensure_head_script(
                    texts[d], Path(os.path.relpath(d, root)).as_posix(), settings.head_script
                )
            except InsertionAnchorNotFoundError as e:
                logging.warning("head script skipped: %s", e)
                report.skipped_steps.append((d, str(e)))

    for d in docs:
        if texts[d] != originals[d]:
            write_text_file(d, texts[d])
            report.updated.append(d)
            logging.info("updated: %s", os.path.relpath(d, root))

    if settings.bundles:
        run_bundles(settings, fetcher, report)

    report.leftovers = audit_documents(docs, hosts)
    log_summary(report)
    return report


def run_bundles(
    settings: Settings, fetcher: Optional[Fetcher] = None, report: Optional[RunReport] = None
) -> RunReport:
    root = settings.root_path()
    dest = root / (settings.bundle_dir or posixpath.join(settings.assets_dir, "js"))
    fetcher = fetcher or Fetcher(
        build_session(), timeout=settings.timeout, max_redirects=settings.max_redirects
    )
    return fetch_bundles(load_bundle_manifest(settings.bundles), dest, fetcher, report)


@dataclass
class BuildReport:
    target: DeploymentTarget
    copied: List[Path] = field(default_factory=list)
    normalized: List[Path] = field(default_factory=list)
    hashed: List[HashedAsset] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


def build_site(
    settings: Settings, target: DeploymentTarget, out_root: Optional[Path] = None
) -> BuildReport:
    """Copy pages and assets into the output tree, rebase paths, then hash assets."""
    root = settings.root_path()
    out = (out_root or root / settings.dist_dir).resolve()
    pages = {Path(p).as_posix() for p in settings.pages}
    for p in pages:
        if not (root / p).is_file():
            raise MissingInputError(root / p)
    assets = settings.assets_dir.strip("/")

    def include(rel: Path) -> bool:
        if rel.as_posix() in pages:
            return True
        return rel.parts[0] == assets and rel.suffix.lower() in STATIC_EXTS

    report = BuildReport(target)
    logging.info("building %s -> %s (%s, base %s)", root, out, target.name, target.base)
    report.copied = mirror_tree(root, out, include)
    report.normalized = normalize_tree(out, target)
    report.hashed, report.missing = hash_and_relink(
        out, target, [out, root], prefixes=settings.hash_prefixes
    )
    return report


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, object]:
    p = Path(path)
    if not p.is_file():
        raise ConfigError(f"config file not found: {p}")
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise ConfigError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise ConfigError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ConfigError("Top-level YAML must be a mapping")
            return data
    else:
        raise ConfigError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Mapping[str, object]) -> Dict[str, object]:
    flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
    for g in ("general", "localize", "sync", "build"):
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    return flat


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Vendor a site's remote assets and prepare it for static hosting.",
    )
    p.add_argument("--config", type=str, default=None, help="path to config.toml|.yaml")
    p.add_argument("--root", type=str, default=None, help="project root (default: .)")
    p.add_argument("--origin", type=str, default=None, help="origin site URL")
    p.add_argument(
        "--page", action="append", default=[], help="HTML page to process (repeatable)"
    )
    p.add_argument("--timeout", type=float, default=None, help="request timeout seconds")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    sub = p.add_subparsers(dest="command")
    sub.add_parser("localize", help="download remote assets and rewrite pages (default)")
    sub.add_parser("bundles", help="fetch the configured bundle files")
    sub.add_parser("audit", help="list remaining references to the origin")
    b = sub.add_parser("build", help="build the output tree for a deployment target")
    b.add_argument("--serve", action="store_true", help="local preview (base /)")
    b.add_argument("--repo", type=str, default=None, help="repository name for a subpath base")
    b.add_argument("--dist", type=str, default=None, help="output directory")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    args = build_arg_parser().parse_args(argv)
    if args.command is None:
        args.command = "localize"
    return args


def settings_from_args(args: argparse.Namespace) -> Settings:
    data: Dict[str, object] = {}
    if args.config:
        data.update(flatten_config(load_config_file(args.config)))
    if args.root:
        data["root"] = args.root
    if args.origin:
        data["origin"] = args.origin
    if args.page:
        data["pages"] = list(args.page)
    if args.timeout is not None:
        data["timeout"] = max(0.1, args.timeout)
    if getattr(args, "dist", None):
        data["dist_dir"] = args.dist
    return Settings.from_mapping(data)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    try:
        settings = settings_from_args(args)
        if args.command == "localize":
            localize_site(settings)
        elif args.command == "bundles":
            log_summary(run_bundles(settings))
        elif args.command == "audit":
            left = audit_documents(input_documents(settings), settings.origin_hosts())
            for doc, urls in left.items():
                for u in urls:
                    print(f"{doc}: {u}")
        elif args.command == "build":
            target = resolve_target(args.serve, args.repo or repo_name_from_env())
            build_site(settings, target)
    except (MissingInputError, ConfigError) as e:
        logging.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
