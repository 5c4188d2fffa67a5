# citation_styles.py
# Citation style table: display metadata, parsing patterns and ordering rule per style

import re


class UnsupportedCitationStyleError(ValueError):
    """Raised when a citation style id is not in CITATION_STYLES."""

    def __init__(self, style_id):
        self.style_id = style_id
        super().__init__(f"Unsupported citation style: {style_id!r}")


class CitationStyle:
    """
    One citation convention.

    Attributes:
        style_id: Short id used by the API ('apa', 'ieee', ...)
        reference_parser: Name of the reference-line parser, or None when the
            style carries no reference list
        ordering: Name of the compile ordering rule ('first_use' or 'author'),
            or None when nothing is compiled
        renumber: Whether compiled references get a new [n] display label
        in_text_pattern: Regex for in-text citations in chapter prose
    """

    def __init__(self, style_id, name, full_name, best_for, in_text_format,
                 reference_format, reference_parser=None, ordering=None,
                 renumber=False, in_text_pattern=None):
        self.style_id = style_id
        self.name = name
        self.full_name = full_name
        self.best_for = best_for
        self.in_text_format = in_text_format
        self.reference_format = reference_format
        self.reference_parser = reference_parser
        self.ordering = ordering
        self.renumber = renumber
        self.in_text_pattern = in_text_pattern

    @property
    def has_references(self):
        return self.reference_parser is not None

    def to_dict(self):
        return {
            'id': self.style_id,
            'name': self.name,
            'full_name': self.full_name,
            'best_for': self.best_for,
            'in_text_format': self.in_text_format,
            'reference_format': self.reference_format,
        }

    def __repr__(self):
        return f"CitationStyle({self.style_id!r})"


# (Author, Year), (Author Year), (Author and Other, Year), (Author & Other Year)
AUTHOR_YEAR_CITATION = re.compile(
    r'\(([A-Z][a-z]+(?:\s+(?:and|&)\s+[A-Z][a-z]+)?)[,\s]+(\d{4})\)'
)
NUMERIC_CITATION = re.compile(r'\[(\d+)\]')


CITATION_STYLES = {
    'apa': CitationStyle(
        'apa',
        name='APA Style',
        full_name='American Psychological Association',
        best_for='Social Sciences, Education, Psychology, Business',
        in_text_format='(Author, Year)',
        reference_format='Author, A. A. (Year). Title of work. Publisher.',
        reference_parser='author_year',
        ordering='author',
        in_text_pattern=AUTHOR_YEAR_CITATION,
    ),
    'ieee': CitationStyle(
        'ieee',
        name='IEEE Style',
        full_name='Institute of Electrical and Electronics Engineers',
        best_for='Engineering, Computer Science, IT, Technology',
        in_text_format='[1], [2], [3]',
        reference_format='[1] A. A. Author, "Title of work," Journal, vol. X, no. Y, pp. Z-Z, Year.',
        reference_parser='numbered',
        ordering='first_use',
        renumber=True,
        in_text_pattern=NUMERIC_CITATION,
    ),
    'harvard': CitationStyle(
        'harvard',
        name='Harvard Style',
        full_name='Harvard Referencing System',
        best_for='Sciences, Humanities, UK Universities',
        in_text_format='(Author Year)',
        reference_format='Author, A.A. (Year) Title of work. City: Publisher.',
        reference_parser='author_year',
        ordering='author',
        in_text_pattern=AUTHOR_YEAR_CITATION,
    ),
    'none': CitationStyle(
        'none',
        name='No References',
        full_name='No Citation Style',
        best_for='Manual editing, Custom requirements',
        in_text_format='N/A',
        reference_format='No references will be generated',
    ),
}


def get_citation_style(style_id):
    """
    Look up a citation style by id (case-insensitive).

    Raises:
        UnsupportedCitationStyleError: for unknown or empty ids
    """
    key = (style_id or '').strip().lower()
    if key not in CITATION_STYLES:
        raise UnsupportedCitationStyleError(style_id)
    return CITATION_STYLES[key]


def get_citation_style_options():
    """Style choices for selection widgets, in display order."""
    return [style.to_dict() for style in CITATION_STYLES.values()]
