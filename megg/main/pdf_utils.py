"""Render report HTML to PDF with WeasyPrint, falling back to Chromium or wkhtmltopdf."""
from __future__ import annotations

import os


class PdfGenerationError(RuntimeError):
    """Raised when no PDF backend is able to render the report."""


_WEASYPRINT_MESSAGE = (
    "Unable to generate PDF reports because WeasyPrint's native dependencies "
    "are missing. Install the Pango and Cairo libraries to enable PDF exports."
)

_CHROMIUM_MESSAGE = (
    "Unable to generate PDF reports using the Chromium fallback because the "
    "Playwright package or its Chromium browser is not installed."
)

_WKHTMLTOPDF_MESSAGE = (
    "Unable to generate PDF reports using the wkhtmltopdf fallback because the "
    "binary is not installed. Set WKHTMLTOPDF_CMD to the wkhtmltopdf path."
)


def _render_with_weasyprint(html: str, base_url: str | None = None) -> bytes:
    try:
        from weasyprint import HTML
    except (ImportError, OSError) as exc:
        raise PdfGenerationError(_WEASYPRINT_MESSAGE) from exc

    try:
        return HTML(string=html, base_url=base_url).write_pdf()
    except OSError as exc:
        raise PdfGenerationError(_WEASYPRINT_MESSAGE) from exc


def _render_with_chromium(html: str, base_url: str | None = None) -> bytes:
    try:
        from playwright.sync_api import sync_playwright
    except ImportError as exc:
        raise PdfGenerationError(_CHROMIUM_MESSAGE) from exc

    try:
        with sync_playwright() as playwright:
            browser = playwright.chromium.launch()
            try:
                page = browser.new_page()
                page.set_content(html, wait_until="networkidle")
                return page.pdf(
                    format="A4",
                    print_background=True,
                    prefer_css_page_size=True,
                )
            finally:
                browser.close()
    except Exception as exc:
        raise PdfGenerationError(_CHROMIUM_MESSAGE) from exc


def _configured_wkhtmltopdf() -> str | None:
    env_value = os.environ.get("WKHTMLTOPDF_CMD")
    if env_value:
        return env_value

    from flask import current_app, has_app_context

    if has_app_context():
        return current_app.config.get("WKHTMLTOPDF_CMD")
    return None


def _render_with_wkhtmltopdf(html: str, base_url: str | None = None) -> bytes:
    try:
        import pdfkit
    except ImportError as exc:
        raise PdfGenerationError(_WKHTMLTOPDF_MESSAGE) from exc

    command = _configured_wkhtmltopdf()
    try:
        configuration = (
            pdfkit.configuration(wkhtmltopdf=command)
            if command
            else pdfkit.configuration()
        )
    except OSError as exc:
        raise PdfGenerationError(_WKHTMLTOPDF_MESSAGE) from exc

    options: dict[str, str | None] = {"encoding": "UTF-8", "quiet": ""}
    if base_url:
        options["enable-local-file-access"] = ""
    try:
        return pdfkit.from_string(html, False, options=options, configuration=configuration)
    except Exception as exc:
        raise PdfGenerationError(_WKHTMLTOPDF_MESSAGE) from exc


def render_html_to_pdf(html: str, base_url: str | None = None) -> bytes:
    """Return PDF bytes for ``html`` from the first backend that succeeds."""

    errors: list[PdfGenerationError] = []
    for renderer in (
        _render_with_weasyprint,
        _render_with_chromium,
        _render_with_wkhtmltopdf,
    ):
        try:
            return renderer(html, base_url=base_url)
        except PdfGenerationError as exc:
            errors.append(exc)

    raise PdfGenerationError(" ".join(str(error) for error in errors)) from errors[0]
