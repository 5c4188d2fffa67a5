# inline_formatter.py
# Bold/italic span scanning and math notation cleanup for chapter text

import re
from collections import namedtuple

Span = namedtuple('Span', ['text', 'bold', 'italic'])

# Bold is tried first so "**x**" never splits into two italic markers.
# Italic content may not contain "*", which keeps stray markers literal.
INLINE_PATTERN = re.compile(r'\*\*(.+?)\*\*|\*([^*\n]+?)\*')

MATH_SEGMENT_PATTERN = re.compile(r'\$\$(.+?)\$\$|\$(.+?)\$')

SUBSCRIPTS = {
    '0': '₀', '1': '₁', '2': '₂', '3': '₃', '4': '₄',
    '5': '₅', '6': '₆', '7': '₇', '8': '₈', '9': '₉',
    'a': 'ₐ', 'e': 'ₑ', 'i': 'ᵢ', 'o': 'ₒ', 'u': 'ᵤ',
    'x': 'ₓ', 'n': 'ₙ', 'h': 'ₕ', 'k': 'ₖ', 'l': 'ₗ',
    'm': 'ₘ', 'p': 'ₚ', 's': 'ₛ', 't': 'ₜ',
    '+': '₊', '-': '₋', '=': '₌', '(': '₍', ')': '₎',
}

SUPERSCRIPTS = {
    '0': '⁰', '1': '¹', '2': '²', '3': '³', '4': '⁴',
    '5': '⁵', '6': '⁶', '7': '⁷', '8': '⁸', '9': '⁹',
    'n': 'ⁿ', 'i': 'ⁱ', '+': '⁺', '-': '⁻', '=': '⁼', '(': '⁽', ')': '⁾',
    'a': 'ᵃ', 'b': 'ᵇ', 'c': 'ᶜ', 'd': 'ᵈ', 'e': 'ᵉ', 'x': 'ˣ',
}

# LaTeX commands the content source emits
MATH_SYMBOLS = [
    ('\\epsilon', 'ε'), ('\\lambda', 'λ'), ('\\approx', '≈'),
    ('\\Omega', 'Ω'), ('\\omega', 'ω'), ('\\alpha', 'α'), ('\\theta', 'θ'),
    ('\\gamma', 'γ'), ('\\delta', 'δ'), ('\\Delta', 'Δ'), ('\\sigma', 'σ'),
    ('\\times', '×'), ('\\infty', '∞'), ('\\cdot', '·'),
    ('\\beta', 'β'), ('\\leq', '≤'), ('\\geq', '≥'), ('\\neq', '≠'),
    ('\\div', '÷'), ('\\rho', 'ρ'), ('\\tau', 'τ'), ('\\phi', 'φ'),
    ('\\pi', 'π'), ('\\mu', 'μ'), ('\\pm', '±'), ('\\eta', 'η'),
]


def format_inline(line):
    """
    Split a line into styled spans.

    Args:
        line: Raw line text, possibly containing **bold** and *italic* markers

    Returns:
        list of Span(text, bold, italic) in reading order. A line without
        markers is returned as a single plain span. Unterminated markers are
        kept as literal characters.
    """
    if line is None:
        line = ''

    spans = []
    position = 0

    for match in INLINE_PATTERN.finditer(line):
        if match.start() > position:
            spans.append(Span(line[position:match.start()], False, False))

        if match.group(1) is not None:
            spans.append(Span(match.group(1), True, False))
        else:
            spans.append(Span(match.group(2), False, True))

        position = match.end()

    if position < len(line):
        spans.append(Span(line[position:], False, False))

    if not spans:
        spans.append(Span(line, False, False))

    return spans


def spans_to_text(spans):
    """Join span text back into a plain string (markers removed)."""
    return ''.join(span.text for span in spans)


def _convert_script(text, table, marker):
    converted = []
    for char in text:
        if char not in table:
            # Unsupported glyph - keep the original notation readable
            return f"{marker}{text}" if len(text) == 1 else f"{marker}({text})"
        converted.append(table[char])
    return ''.join(converted)


def _convert_math_segment(segment):
    segment = re.sub(r'\\frac\{([^}]+)\}\{([^}]+)\}', r'(\1/\2)', segment)
    segment = re.sub(r'\\sqrt\{([^}]+)\}', r'√\1', segment)
    segment = re.sub(r'_\{([^}]+)\}', lambda m: _convert_script(m.group(1), SUBSCRIPTS, '_'), segment)
    segment = re.sub(r'_([a-zA-Z0-9])', lambda m: _convert_script(m.group(1), SUBSCRIPTS, '_'), segment)
    segment = re.sub(r'\^\{([^}]+)\}', lambda m: _convert_script(m.group(1), SUPERSCRIPTS, '^'), segment)
    segment = re.sub(r'\^([a-zA-Z0-9])', lambda m: _convert_script(m.group(1), SUPERSCRIPTS, '^'), segment)
    return _replace_symbols(segment)


def _replace_symbols(text):
    for command, symbol in MATH_SYMBOLS:
        text = re.sub(re.escape(command) + r'(?![A-Za-z])', symbol, text)
    return text


def normalize_math(text):
    """
    Convert LaTeX-style math notation into plain Unicode.

    Sub/superscripts, fractions and roots are only rewritten inside $...$ or
    $$...$$ segments, where the delimiters are dropped. Named symbols such as
    \\alpha or \\leq are replaced everywhere.
    """
    if not text or ('$' not in text and '\\' not in text):
        return text

    text = MATH_SEGMENT_PATTERN.sub(
        lambda m: _convert_math_segment(m.group(1) if m.group(1) is not None else m.group(2)),
        text,
    )
    return _replace_symbols(text)
