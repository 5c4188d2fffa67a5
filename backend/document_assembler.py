# document_assembler.py
# Build the structured report (TOC, chapters, references) from chapter markdown

import logging

from inline_formatter import Span, format_inline, normalize_math, spans_to_text
from block_classifier import (
    classify_body, HEADING, BULLET, NUMBERED, TABLE_ROW, FIGURE, BLANK, PARAGRAPH,
)
from citation_styles import get_citation_style
from reference_extractor import strip_reference_section
from image_resolver import FigureResolution

logger = logging.getLogger(__name__)

CONTENT_NOT_AVAILABLE = 'Content not available'
TOC_HEADING = 'TABLE OF CONTENTS'
REFERENCES_HEADING = 'REFERENCES'


class MissingChaptersError(ValueError):
    """Raised when an export is requested without a chapters collection."""

    def __init__(self, message='No chapters supplied for assembly'):
        super().__init__(message)


def normalize_chapter(chapter):
    """Accept the chapter shapes used by the API and the stores."""
    number = chapter.get('number', chapter.get('chapter_number'))
    if number is None:
        raise ValueError(f"Chapter without a number: {chapter.get('title')!r}")
    body = chapter.get('body_markdown')
    if body is None:
        body = chapter.get('content', chapter.get('body'))
    return {
        'number': int(number),
        'title': (chapter.get('title') or '').strip(),
        'body': body or '',
    }


def _paragraph(spans, **extra):
    node = {'type': 'paragraph', 'spans': spans, 'text': spans_to_text(spans)}
    node.update(extra)
    return node


class DocumentAssembler:
    """
    Turn ordered chapters, a compiled reference list and an image resolver
    into the document model consumed by WordGenerator.

    The model is a dict:
        title, abstract, style, stats, and 'sections' - a TOC section,
        one 'chapter' section per chapter and, when there are references,
        a final 'references' section. Each section holds typed content nodes.
    """

    def __init__(self, convert_math=True, toc_subsections=True):
        self.convert_math = convert_math
        self.toc_subsections = toc_subsections
        self.figure_count = 0
        self.missing_figures = []
        self.table_count = 0

    def assemble(self, chapters, compiled_references, image_resolver, style_id,
                 title=None, abstract=None):
        """
        Assemble the full document.

        Args:
            chapters: Iterable of chapter dicts (number, title, body)
            compiled_references: Output of compile_references (may be empty)
            image_resolver: ImageResolver, or None when no images exist
            style_id: Citation style id of the project
            title: Optional report title
            abstract: Optional abstract text rendered before the TOC

        Raises:
            MissingChaptersError: chapters is None
            UnsupportedCitationStyleError: unknown style_id
        """
        if chapters is None:
            raise MissingChaptersError()

        style = get_citation_style(style_id)
        compiled_references = list(compiled_references or [])

        self.figure_count = 0
        self.missing_figures = []
        self.table_count = 0

        ordered = sorted((normalize_chapter(c) for c in chapters), key=lambda c: c['number'])
        self._check_numbering(ordered)

        # The compiled list replaces the per-chapter reference blocks
        strip_references = style.has_references and bool(compiled_references)

        prepared = []
        for chapter in ordered:
            body = chapter['body']
            if strip_references:
                body = strip_reference_section(body)
            if self.convert_math:
                body = normalize_math(body)
            prepared.append((chapter, list(classify_body(body)) if body.strip() else []))

        if image_resolver is not None:
            image_resolver.prefetch(
                (block['chapter'], block['figure'])
                for _, blocks in prepared
                for _, block in blocks
                if block['kind'] == FIGURE
            )

        chapter_sections = [
            self._assemble_chapter(chapter, blocks, image_resolver)
            for chapter, blocks in prepared
        ]

        sections = [self._build_toc(chapter_sections)] + chapter_sections
        if compiled_references:
            sections.append(self._build_references(compiled_references))

        stats = {
            'chapters': len(chapter_sections),
            'figures': self.figure_count,
            'figures_missing': len(self.missing_figures),
            'tables': self.table_count,
            'references': len(compiled_references),
        }
        logger.info(f"Assembled document: {stats}")

        return {
            'title': title,
            'abstract': (abstract or '').strip() or None,
            'style': style.style_id,
            'sections': sections,
            'stats': stats,
        }

    def _check_numbering(self, chapters):
        numbers = [c['number'] for c in chapters]
        if len(set(numbers)) != len(numbers):
            raise ValueError(f"Duplicate chapter numbers: {numbers}")
        expected = list(range(1, len(numbers) + 1))
        if numbers != expected:
            logger.warning(f"Chapter numbers are not contiguous from 1: {numbers}")

    def _assemble_chapter(self, chapter, blocks, image_resolver):
        number = chapter['number']
        content = []
        table_index = None
        row_index = 0

        for line_number, block in blocks:
            kind = block['kind']

            if kind != TABLE_ROW:
                table_index = None

            if kind == HEADING:
                content.append({
                    'type': 'heading',
                    'level': block['level'],
                    'text': spans_to_text(block['spans']),
                    'spans': block['spans'],
                })
            elif kind == BULLET:
                content.append({'type': 'bullet', 'spans': block['spans'], 'text': spans_to_text(block['spans'])})
            elif kind == NUMBERED:
                content.append({
                    'type': 'numbered',
                    'number': block['number'],
                    'spans': block['spans'],
                    'text': spans_to_text(block['spans']),
                })
            elif kind == TABLE_ROW:
                if table_index is None:
                    table_index = self.table_count
                    self.table_count += 1
                    row_index = 0
                content.append({
                    'type': 'table_row',
                    'table_index': table_index,
                    'row_index': row_index,
                    'is_header': row_index == 0,
                    'cells': block['cells'],
                })
                row_index += 1
            elif kind == FIGURE:
                content.append(self._figure_node(block, image_resolver))
            elif kind == PARAGRAPH:
                content.append(_paragraph(block['spans']))
            elif kind == BLANK:
                continue

        if not content:
            logger.warning(f"Chapter {number} has no content; using placeholder text")
            content.append(_paragraph([Span(CONTENT_NOT_AVAILABLE, False, False)], placeholder=True))

        return {
            'type': 'chapter',
            'chapter_number': number,
            'heading': f"CHAPTER {number}",
            'chapter_title': chapter['title'],
            'content': content,
        }

    def _figure_node(self, block, image_resolver):
        """The single place where a missing figure turns into fallback text."""
        self.figure_count += 1
        chapter, figure = block['chapter'], block['figure']

        if image_resolver is not None:
            resolution = image_resolver.resolve(chapter, figure)
        else:
            resolution = FigureResolution.missing(chapter, figure, 'no image resolver')

        if not resolution.found:
            self.missing_figures.append(block['placeholder_id'])
            return _paragraph([Span(resolution.fallback_text, False, True)], alignment='center', fallback=True)

        return {
            'type': 'figure',
            'placeholder_id': block['placeholder_id'],
            'label': resolution.label,
            'chapter': chapter,
            'figure': figure,
            'number': f"{chapter}.{figure}",
            'caption': resolution.caption,
            'image': resolution.data,
            'content_type': resolution.asset.get('content_type'),
        }

    def _build_toc(self, chapter_sections):
        entries = []
        for section in chapter_sections:
            title = section['chapter_title'].upper()
            text = f"{section['heading']}: {title}" if title else section['heading']
            entries.append({'level': 1, 'text': text, 'chapter_number': section['chapter_number']})

            if not self.toc_subsections:
                continue
            for node in section['content']:
                if node['type'] == 'heading' and node['level'] > 1:
                    entries.append({
                        'level': node['level'],
                        'text': node['text'],
                        'chapter_number': section['chapter_number'],
                    })

        return {'type': 'toc', 'heading': TOC_HEADING, 'entries': entries}

    def _build_references(self, compiled_references):
        content = []
        for reference in compiled_references:
            text = reference.get('display_text') or reference.get('raw_text') or ''
            content.append(_paragraph(
                format_inline(text),
                reference_key=reference.get('key'),
                order_number=reference.get('order_number'),
            ))
        return {'type': 'references', 'heading': REFERENCES_HEADING, 'content': content}
