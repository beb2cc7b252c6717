"""
In-memory browser doubles for probe engine and scheduler tests
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from forum_sniper.browser import BrowserDriver, BrowserSession
from forum_sniper.probe_engine import (
    FIELD_SCAN_SCRIPT,
    LARGEST_FORM_SCRIPT,
    LINK_SCAN_SCRIPT,
    SUBMIT_SELECTOR,
)


def field_dict(tag="input", type="text", name="", id="", placeholder="", label="", hidden=False):
    return {"tag": tag, "type": type, "name": name, "id": id,
            "placeholder": placeholder, "label": label, "hidden": hidden}


def simple_form_fields():
    return [
        field_dict(name="username", id="username"),
        field_dict(type="email", name="email", id="email"),
        field_dict(type="password", name="password", id="password"),
        field_dict(type="password", name="password_confirm", id="password_confirm"),
    ]


@dataclass
class FakePage:
    html: str = "<html><body></body></html>"
    title: str = ""
    body: str = ""
    status: Optional[int] = 200
    fields: List[Dict[str, Any]] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    links: List[Dict[str, Any]] = field(default_factory=list)
    frames: List[str] = field(default_factory=list)
    has_submit: bool = True
    submit_disabled: bool = False
    after_submit_body: str = ""
    missing_selectors: List[str] = field(default_factory=list)
    failing_selectors: List[str] = field(default_factory=list)


NOT_FOUND = FakePage(html="<html><body>Not Found</body></html>", title="404", body="Not Found", status=404)


class FakeSession(BrowserSession):

    def __init__(self, pages: Dict[str, FakePage], navigation_error: Optional[Exception] = None):
        self.pages = pages
        self.navigation_error = navigation_error
        self.url = ""
        self.page = FakePage()
        self.visited: List[str] = []
        self.actions: List[tuple] = []
        self.cookies: List[Dict[str, Any]] = []
        self.headers: Dict[str, str] = {}
        self.submitted = False
        self.closed = False

    def navigate(self, url, timeout_ms):
        self.visited.append(url)
        if self.navigation_error and not self.pages.get(url):
            raise self.navigation_error
        self.url = url
        self.page = self.pages.get(url, NOT_FOUND)
        self.submitted = False
        return self.page.status

    def content(self):
        return self.page.html

    def title(self):
        return self.page.title

    def current_url(self):
        return self.url

    def body_text(self):
        return self.page.after_submit_body if self.submitted else self.page.body

    def evaluate(self, script, arg=None):
        if script == FIELD_SCAN_SCRIPT:
            return {"fields": list(self.page.fields), "labels": list(self.page.labels)}
        if script == LINK_SCAN_SCRIPT:
            return [{"index": l["index"], "text": l["text"], "visible": True} for l in self.page.links]
        if script == LARGEST_FORM_SCRIPT:
            return self.page.html
        return None

    def count(self, selector):
        if selector == 'input[type="password"]':
            return sum(1 for f in self.page.fields if f["type"] == "password")
        if selector == 'input[type="email"]':
            return sum(1 for f in self.page.fields if f["type"] == "email")
        if selector == SUBMIT_SELECTOR:
            return 1 if self.page.has_submit else 0
        return 0 if selector in self.page.missing_selectors else 1

    def _check(self, selector):
        if selector in self.page.failing_selectors:
            raise RuntimeError(f"element not interactable: {selector}")

    def fill(self, selector, value, timeout_ms=5000):
        self._check(selector)
        self.actions.append(("fill", selector, value))

    def toggle(self, selector, timeout_ms=5000):
        self._check(selector)
        self.actions.append(("toggle", selector))

    def click(self, selector, timeout_ms=10000):
        self._check(selector)
        self.actions.append(("click", selector))
        if selector.startswith("a >> nth="):
            index = int(selector.split("=")[1])
            link = next(l for l in self.page.links if l["index"] == index)
            self.navigate(link["href"], timeout_ms)
        else:
            self.submitted = True

    def is_disabled(self, selector):
        return self.page.submit_disabled

    def frame_urls(self):
        return [self.url] + list(self.page.frames)

    def add_cookies(self, cookies):
        self.cookies.extend(cookies)

    def set_extra_headers(self, headers):
        self.headers.update(headers)

    def wait(self, ms):
        pass

    def wait_for_load(self, timeout_ms=10000):
        pass

    def screenshot(self, path):
        with open(path, "wb") as f:
            f.write(b"PNG")

    def close(self):
        self.closed = True

    @property
    def fills(self):
        return [a for a in self.actions if a[0] == "fill"]


class FakeDriver(BrowserDriver):

    def __init__(self, pages: Dict[str, FakePage], navigation_error: Optional[Exception] = None):
        self.pages = pages
        self.navigation_error = navigation_error
        self.sessions: List[FakeSession] = []

    def open(self):
        session = FakeSession(self.pages, self.navigation_error)
        self.sessions.append(session)
        return session

    @property
    def last(self) -> FakeSession:
        return self.sessions[-1]
