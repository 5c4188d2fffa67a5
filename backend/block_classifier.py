# block_classifier.py
# Line-level structure detection for the chapter markdown dialect

import re

from inline_formatter import format_inline

# Block kinds
HEADING = 'heading'
BULLET = 'bullet'
NUMBERED = 'numbered'
TABLE_ROW = 'table_row'
FIGURE = 'figure'
BLANK = 'blank'
PARAGRAPH = 'paragraph'

# Ordered heading markers: the longest prefix must be tested first
HEADING_MARKERS = [
    ('#### ', 3),
    ('### ', 2),
    ('## ', 1),
]

BULLET_PATTERN = re.compile(r'^[-*] (.*)$')
NUMBERED_PATTERN = re.compile(r'^(\d+)\. (.*)$')
TABLE_SEPARATOR_PATTERN = re.compile(r'^[\s|:\-]+$')
FIGURE_PLACEHOLDER_PATTERN = re.compile(r'\{\{figure(\d+)\.(\d+)\}\}')


def split_table_cells(line):
    """Split a markdown table row into stripped cell strings."""
    row = line.strip()
    if row.startswith('|'):
        row = row[1:]
    if row.endswith('|'):
        row = row[:-1]
    return [cell.strip() for cell in row.split('|')]


def is_table_separator(line):
    """True for rows such as |---|:---:| that only delimit the header."""
    row = line.strip()
    return row.startswith('|') and '-' in row and bool(TABLE_SEPARATOR_PATTERN.match(row))


def classify_line(line):
    """
    Classify one markdown line.

    Rules are applied in priority order and the first match wins:
    heading, bullet, numbered item, table row, figure placeholder,
    blank, paragraph.

    Args:
        line: One line of chapter text

    Returns:
        dict with a 'kind' key plus kind-specific fields:
        - heading: 'level' (1-3), 'text', 'spans'
        - bullet / numbered / paragraph: 'text', 'spans' (numbered adds 'number')
        - table_row: 'cells' (list of span lists), 'separator'
        - figure: 'chapter', 'figure', 'placeholder_id'
        - blank: nothing else
    """
    stripped = (line or '').strip()

    for marker, level in HEADING_MARKERS:
        if stripped.startswith(marker):
            text = stripped[len(marker):].strip()
            return {'kind': HEADING, 'level': level, 'text': text, 'spans': format_inline(text)}

    bullet_match = BULLET_PATTERN.match(stripped)
    if bullet_match:
        text = bullet_match.group(1).strip()
        return {'kind': BULLET, 'text': text, 'spans': format_inline(text)}

    numbered_match = NUMBERED_PATTERN.match(stripped)
    if numbered_match:
        text = numbered_match.group(2).strip()
        return {
            'kind': NUMBERED,
            'number': int(numbered_match.group(1)),
            'text': text,
            'spans': format_inline(text),
        }

    if stripped.startswith('|'):
        if is_table_separator(stripped):
            return {'kind': TABLE_ROW, 'cells': [], 'separator': True}
        cells = [format_inline(cell) for cell in split_table_cells(stripped)]
        return {'kind': TABLE_ROW, 'cells': cells, 'separator': False}

    figure_match = FIGURE_PLACEHOLDER_PATTERN.search(stripped)
    if figure_match:
        chapter = int(figure_match.group(1))
        figure = int(figure_match.group(2))
        return {
            'kind': FIGURE,
            'chapter': chapter,
            'figure': figure,
            'placeholder_id': f"figure{chapter}.{figure}",
        }

    if not stripped:
        return {'kind': BLANK}

    return {'kind': PARAGRAPH, 'text': stripped, 'spans': format_inline(stripped)}


def classify_body(body):
    """
    Classify every line of a chapter body.

    The first level-1 heading is dropped because the chapter title is
    rendered from chapter metadata. Table separator rows are dropped too.

    Yields:
        (line_number, block) pairs, 1-based line numbers
    """
    heading_suppressed = False

    for line_number, line in enumerate((body or '').splitlines(), start=1):
        block = classify_line(line)

        if block['kind'] == HEADING and block['level'] == 1 and not heading_suppressed:
            heading_suppressed = True
            continue

        if block['kind'] == TABLE_ROW and block['separator']:
            continue

        yield line_number, block
