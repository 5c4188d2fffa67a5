# reference_extractor.py
# Extract reference lists and in-text citations from generated chapter text

import re
import logging

from citation_styles import get_citation_style

logger = logging.getLogger(__name__)

# "## References" or "# References" (any case) opens the reference block
REFERENCE_HEADING_PATTERN = re.compile(r'^#{1,2}\s*references\b.*$', re.IGNORECASE | re.MULTILINE)
# The block runs until the next heading of any level
SECTION_END_PATTERN = re.compile(r'^#{1,4}\s', re.MULTILINE)

IEEE_LINE_PATTERN = re.compile(r'^\[(\d+)\]\s+(.+)$')
YEAR_PATTERN = re.compile(r'(\d{4})')
AUTHOR_YEAR_PATTERN = re.compile(r'\((\d{4})\)|,\s+(\d{4})')
LEADING_AUTHOR_PATTERN = re.compile(r"^([A-Z][a-zA-Z'’]+(?:[-\s][A-Z][a-zA-Z'’]+)*)")
NAME_WORD_PATTERN = re.compile(r"[A-Z][a-zA-Z'’\-]+")
LIST_MARKER_PATTERN = re.compile(r'^(?:[-*•]\s+|\d+\.\s+)')

MIN_AUTHOR_YEAR_LINE_LENGTH = 20


def _find_reference_block(text):
    """Return (heading_start, body_start, body_end) or None."""
    if not text:
        return None

    heading = REFERENCE_HEADING_PATTERN.search(text)
    if not heading:
        return None

    body_start = heading.end()
    end_match = SECTION_END_PATTERN.search(text, body_start)
    body_end = end_match.start() if end_match else len(text)
    return heading.start(), body_start, body_end


def extract_reference_section(text):
    """
    Return the raw text of a chapter's reference block, or '' when the chapter
    has no "## References" heading.
    """
    block = _find_reference_block(text)
    if block is None:
        return ''
    _, body_start, body_end = block
    return text[body_start:body_end].strip('\n')


def strip_reference_section(text):
    """Remove the reference heading and its block from a chapter body."""
    block = _find_reference_block(text)
    if block is None:
        return text or ''
    heading_start, _, body_end = block
    return (text[:heading_start].rstrip('\n') + '\n' + text[body_end:]).strip('\n')


def _make_reference(key, raw_text, author, year, chapter_number, style_id):
    return {
        'key': key,
        'raw_text': raw_text,
        'author': author,
        'year': year,
        'first_used_chapter': chapter_number,
        'used_in_chapters': [chapter_number],
        'order_number': None,
        'style': style_id,
    }


def _first_author_surname(text):
    """
    Guess the first author's surname from an IEEE entry body.

    "T. A. Adeyemi and C. Okafor, ..." -> "Adeyemi"
    "Adeyemi, T. A., ..." -> "Adeyemi"
    """
    first_author = re.split(r',|\s+and\s+|\s+&\s+|"|“', text, maxsplit=1)[0]
    names = [word for word in NAME_WORD_PATTERN.findall(first_author) if len(word.rstrip('.')) > 1]
    if not names:
        return None
    return names[-1]


def _parse_numbered_line(line, chapter_number, style_id):
    match = IEEE_LINE_PATTERN.match(line)
    if not match:
        return None

    number = match.group(1)
    body = match.group(2).strip()
    year_match = YEAR_PATTERN.search(body)

    return _make_reference(
        key=number,
        raw_text=f"[{number}] {body}",
        author=_first_author_surname(body),
        year=year_match.group(1) if year_match else None,
        chapter_number=chapter_number,
        style_id=style_id,
    )


def _parse_author_year_line(line, chapter_number, style_id):
    line = LIST_MARKER_PATTERN.sub('', line)
    if len(line) < MIN_AUTHOR_YEAR_LINE_LENGTH:
        return None

    author_match = LEADING_AUTHOR_PATTERN.match(line)
    year_match = AUTHOR_YEAR_PATTERN.search(line)
    if not author_match or not year_match:
        return None

    author = author_match.group(1).strip()
    year = year_match.group(1) or year_match.group(2)
    compact_author = re.sub(r'\s+', '', author)

    return _make_reference(
        key=f"{compact_author}{year}",
        raw_text=line,
        author=author,
        year=year,
        chapter_number=chapter_number,
        style_id=style_id,
    )


REFERENCE_LINE_PARSERS = {
    'numbered': _parse_numbered_line,
    'author_year': _parse_author_year_line,
}


def parse_references(style_id, reference_section_text, chapter_number):
    """
    Parse the lines of a reference block into reference dicts.

    Lines that do not yield a reference under the style's rules are skipped.

    Args:
        style_id: Citation style id ('apa', 'ieee', 'harvard', 'none')
        reference_section_text: Text that followed the References heading
        chapter_number: Chapter the block came from

    Returns:
        list of reference dicts in source order

    Raises:
        UnsupportedCitationStyleError: for unknown style ids
    """
    style = get_citation_style(style_id)
    if not style.has_references:
        return []

    parse_line = REFERENCE_LINE_PARSERS[style.reference_parser]
    references = []
    skipped = 0

    for line in (reference_section_text or '').split('\n'):
        line = line.strip()
        if not line:
            continue
        reference = parse_line(line, chapter_number, style.style_id)
        if reference is None:
            skipped += 1
            logger.debug(f"Skipped unparsable reference line: {line[:60]}")
            continue
        references.append(reference)

    logger.info(f"Extracted {len(references)} references from chapter {chapter_number} "
                f"({skipped} lines skipped)")
    return references


def parse_chapter_references(style_id, chapter_text, chapter_number):
    """Locate the reference block of a full chapter text and parse it."""
    section = extract_reference_section(chapter_text)
    if not section:
        logger.info(f"No REFERENCES section found in chapter {chapter_number}")
        return []
    return parse_references(style_id, section, chapter_number)


def _numbered_citation_key(match):
    return match.group(1)


def _author_year_citation_key(match):
    first_author = re.split(r'\s+(?:and|&)\s+', match.group(1))[0].strip()
    return f"{first_author}{match.group(2)}"


IN_TEXT_KEY_BUILDERS = {
    'numbered': _numbered_citation_key,
    'author_year': _author_year_citation_key,
}


def extract_in_text_citations(content, style_id):
    """
    Collect distinct in-text citation keys from chapter prose.

    APA/Harvard citations produce "AuthorYear" keys for the first author,
    IEEE citations produce the bracketed number. The result is informational
    only; it never feeds the reference registry.
    """
    style = get_citation_style(style_id)
    if style.in_text_pattern is None:
        return []

    prose = strip_reference_section(content or '')
    citation_key = IN_TEXT_KEY_BUILDERS[style.reference_parser]
    citations = []

    for match in style.in_text_pattern.finditer(prose):
        key = citation_key(match)
        if key not in citations:
            citations.append(key)

    return citations
