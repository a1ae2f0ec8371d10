"""
Browser stealth patches.

Init scripts that make an automated page look like a normal browser:
- navigator.webdriver hidden, automation globals removed
- non-empty navigator.plugins
- plausible navigator.languages

Init scripts only affect documents created after they are installed, so they
must be applied before the first navigation.
"""

import json
from typing import TYPE_CHECKING, Any

from tierfetch.utils.logging import get_logger

if TYPE_CHECKING:
    from tierfetch.crawler.browser_pool import Page

logger = get_logger(__name__)


# navigator.webdriver / automation markers / plugins. Languages are installed
# separately so they can follow the active browser profile.
STEALTH_JS = """
(() => {
    const hide = (obj, prop) => {
        try {
            Object.defineProperty(obj, prop, { get: () => undefined, configurable: true });
        } catch (e) {}
    };

    hide(navigator, 'webdriver');
    for (const prop of [
        '__webdriver_script_fn', '__driver_evaluate', '__webdriver_evaluate',
        '__selenium_evaluate', '__fxdriver_evaluate', '__driver_unwrapped',
        '__webdriver_unwrapped', '__selenium_unwrapped', '__fxdriver_unwrapped'
    ]) {
        try { delete navigator[prop]; } catch (e) {}
    }

    delete window.__playwright;
    delete window.__pwInitScripts;
    delete window.__puppeteer;
    delete window.callPhantom;
    delete window._phantom;

    if (!window.chrome) { window.chrome = {}; }
    if (!window.chrome.runtime) { window.chrome.runtime = {}; }

    const originalQuery = navigator.permissions?.query?.bind(navigator.permissions);
    if (originalQuery) {
        navigator.permissions.query = (parameters) =>
            parameters.name === 'notifications'
                ? Promise.resolve({ state: Notification.permission })
                : originalQuery(parameters);
    }

    Object.defineProperty(navigator, 'plugins', {
        get: () => {
            const pdf = {
                filename: 'internal-pdf-viewer',
                description: 'Portable Document Format'
            };
            const plugins = [
                { name: 'PDF Viewer', ...pdf },
                { name: 'Chrome PDF Viewer', ...pdf },
                { name: 'Chromium PDF Viewer', ...pdf }
            ];
            plugins.item = (i) => plugins[i];
            plugins.namedItem = (name) => plugins.find(p => p.name === name);
            plugins.refresh = () => {};
            return plugins;
        },
        configurable: true
    });
})();
"""

_NAVIGATOR_OVERRIDES_TEMPLATE = """
((overrides) => {
    for (const [prop, value] of Object.entries(overrides)) {
        try {
            Object.defineProperty(navigator, prop, { get: () => value, configurable: true });
        } catch (e) {}
    }
})(%s);
"""

DEFAULT_LANGUAGES: tuple[str, ...] = ("en-US", "en")


def navigator_overrides_script(overrides: dict[str, Any]) -> str:
    """Build an init script that pins navigator properties to fixed values."""
    return _NAVIGATOR_OVERRIDES_TEMPLATE % json.dumps(overrides)


async def apply_stealth(
    page: "Page",
    languages: tuple[str, ...] | list[str] = DEFAULT_LANGUAGES,
) -> None:
    """Install the stealth patch set on a page.

    Raises whatever the page raises: a session without its stealth patches
    is not one we want to navigate with.

    Args:
        page: Page that has not navigated yet.
        languages: Value for navigator.languages.
    """
    await page.add_init_script(STEALTH_JS)
    await page.add_init_script(navigator_overrides_script({"languages": list(languages)}))
    logger.debug("Stealth scripts applied", languages=list(languages))


def get_stealth_args() -> list[str]:
    """Chromium launch arguments that reduce automation fingerprints."""
    return [
        "--disable-blink-features=AutomationControlled",
        "--disable-infobars",
        "--disable-dev-shm-usage",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-translate",
        "--no-first-run",
        "--no-default-browser-check",
    ]
