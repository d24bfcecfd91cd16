from __future__ import annotations

from inspector.extractor import Extraction, extract_content, remove_boilerplate

ARTICLE = """
<html>
  <head><title>  Solar   Storage Basics </title><style>body {color: red}</style></head>
  <body class="has-cookie-banner">
    <header>Site header</header>
    <nav><a href="/nav-only">Navigation</a></nav>
    <div class="cookie-notice">We use cookies to improve things.</div>
    <div id="privacy-popup">Read our privacy popup.</div>
    <aside class="sidebar">Sidebar text</aside>
    <main>
      <h1>Batteries</h1>
      <p>Grid batteries   store
         energy for later use. This website uses cookies for analytics. They smooth demand peaks!</p>
      <a href="/guide#part-2">Guide</a>
      <a href="https://example.com/faq">FAQ</a>
      <a href="https://blog.example.com/post">Blog</a>
      <a href="https://other.org/">Elsewhere</a>
      <a href="mailto:info@example.com">Mail</a>
      <a href="/guide#part-2">Guide again</a>
    </main>
    <script>var tracking = true;</script>
    <footer>Footer text</footer>
  </body>
</html>
"""


def test_extract_strips_blocked_regions_and_boilerplate():
    result = extract_content(ARTICLE, "https://example.com/articles/solar")

    assert result.title == "Solar Storage Basics"
    assert result.text.startswith("Batteries Grid batteries store energy for later use.")
    assert "They smooth demand peaks!" in result.text
    for fragment in ("Site header", "Navigation", "cookies", "privacy popup", "Sidebar", "tracking", "Footer"):
        assert fragment not in result.text


def test_extract_keeps_only_same_host_links_in_document_order():
    result = extract_content(ARTICLE, "https://example.com/articles/solar")

    assert result.links == [
        "https://example.com/guide#part-2",
        "https://example.com/faq",
    ]


def test_extract_truncates_text():
    html = "<html><body><p>" + "word " * 1000 + "</p></body></html>"
    result = extract_content(html, "https://example.com", max_text_length=120)
    assert len(result.text) == 120


def test_extract_without_body_element_still_reads_text():
    result = extract_content("<title>T</title><p>Loose fragment of text</p>", "https://example.com")
    assert result.title == "T"
    assert result.text == "Loose fragment of text"


def test_extract_empty_input_is_empty_result():
    assert extract_content("", "https://example.com") == Extraction()
    assert extract_content(None, "https://example.com").empty  # type: ignore[arg-type]


def test_remove_boilerplate_cuts_through_sentence_terminator():
    text = "Useful first. By continuing to use this site you agree. Useful last."
    assert remove_boilerplate(text) == "Useful first. Useful last."
