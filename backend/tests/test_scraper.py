"""
Tests for web page ingestion.

requests.get is patched; no network is used. The view tests stop before
the database by patching the shared store-and-ingest step.
"""
import time

import jwt
import pytest
import requests
from django.http import JsonResponse
from django.test import Client
from unittest.mock import MagicMock, patch

from apps.docs.scraper import ScrapedPage, ScrapeError, extract_page, scrape_url, validate_url

SECRET = "test-secret-with-at-least-thirty-two-bytes"
URL = '/api/documents/scrape'

ARTICLE = """
<html>
  <head><title>Company X Q4 results</title><style>body { color: red; }</style></head>
  <body>
    <script>trackVisitor();</script>
    <h1>Q4 results</h1>
    <p>Company X revenue grew 20% in Q4.</p>
    <p>Risks include supply chain delays and rising freight costs across the
       European distribution network.</p>
  </body>
</html>
"""


def page_response(html, status=200):
    response = MagicMock()
    response.text = html
    response.status_code = status
    if status >= 400:
        error = requests.HTTPError(f"{status} error")
        error.response = response
        response.raise_for_status.side_effect = error
    return response


class TestValidateUrl:

    @pytest.mark.parametrize("url", [None, "", "   ", "ftp://example.com/a", "example.com/page", 42])
    def test_rejected(self, url):
        with pytest.raises(ScrapeError):
            validate_url(url)

    def test_stripped(self):
        assert validate_url("  https://example.com/q4  ") == "https://example.com/q4"


class TestExtractPage:

    def test_text_and_title(self):
        page = extract_page(ARTICLE, "https://example.com/q4")

        assert page.title == "Company X Q4 results"
        assert "Company X revenue grew 20% in Q4." in page.content
        assert "trackVisitor" not in page.content
        assert "color: red" not in page.content
        assert "  " not in page.content and "\n" not in page.content

    def test_title_falls_back_to_host(self):
        html = "<html><body><p>" + "Revenue grew steadily. " * 10 + "</p></body></html>"

        assert extract_page(html, "https://ir.example.com/q4").title == "ir.example.com"

    def test_too_little_text(self):
        with pytest.raises(ScrapeError, match="Insufficient"):
            extract_page("<html><body><p>Hi</p></body></html>", "https://example.com")

    def test_content_capped(self, settings):
        settings.SCRAPE_MAX_CHARS = 120

        page = extract_page(ARTICLE, "https://example.com/q4")

        assert len(page.content) == 120


class TestScrapeUrl:

    def test_fetches_with_timeout_and_agent(self):
        with patch('apps.docs.scraper.requests.get', return_value=page_response(ARTICLE)) as get:
            page = scrape_url("https://example.com/q4")

        assert page.url == "https://example.com/q4"
        assert get.call_args.kwargs['timeout'] == 30
        assert 'User-Agent' in get.call_args.kwargs['headers']

    def test_http_error(self):
        with patch('apps.docs.scraper.requests.get', return_value=page_response('', status=404)):
            with pytest.raises(ScrapeError, match="404"):
                scrape_url("https://example.com/missing")

    def test_network_error(self):
        with patch('apps.docs.scraper.requests.get', side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ScrapeError, match="Failed to fetch"):
                scrape_url("https://example.com/q4")


# ============================================================================
# POST /api/documents/scrape
# ============================================================================

@pytest.fixture
def auth_header(settings):
    settings.AUTH_JWT_SECRET = SECRET
    settings.AUTH_AUDIENCE = 'authenticated'
    settings.AUTH_VALID_ISSUERS = []
    token = jwt.encode(
        {'sub': 'user-1', 'aud': 'authenticated', 'exp': int(time.time()) + 300},
        SECRET,
        algorithm='HS256',
    )
    return {'Authorization': f'Bearer {token}'}


def post_url(url, headers):
    return Client().post(URL, data={'url': url}, content_type='application/json', headers=headers)


class TestScrapeView:

    def test_page_stored_and_ingested(self, auth_header):
        page = ScrapedPage(url="https://example.com/q4", title="Q4", content="Company X revenue grew 20% in Q4.")
        stored = JsonResponse({'document_id': 'doc-1', 'status': 'INDEXED', 'chunks': 1}, status=201)

        with patch('apps.docs.views.scrape_url', return_value=page), \
                patch('apps.docs.views.store_and_ingest', return_value=stored) as store:
            response = post_url(page.url, auth_header)

        assert response.status_code == 201
        assert response.json()['chunks'] == 1
        fields = store.call_args.args[1]
        assert fields['source'] == "https://example.com/q4"
        assert fields['mime_type'] == 'text/html'
        assert fields['content'] == page.content

    def test_scrape_failure_envelope(self, auth_header):
        with patch('apps.docs.views.scrape_url', side_effect=ScrapeError("Failed to fetch URL: 404")):
            response = post_url("https://example.com/missing", auth_header)

        assert response.status_code == 422
        body = response.json()
        assert body['error_code'] == 'SCRAPE_422'
        assert body['message'] == "Failed to fetch URL: 404"
        assert body['requestId']

    def test_invalid_url(self, auth_header):
        response = post_url("file:///etc/passwd", auth_header)

        assert response.status_code == 422

    def test_requires_auth(self):
        response = post_url("https://example.com/q4", {})

        assert response.status_code == 401
