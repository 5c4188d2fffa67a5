# test_word_generator.py
# .docx output of the assembled report

import unittest
import struct
import zlib
import sys
import os
from io import BytesIO

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml.ns import qn

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from image_resolver import ImageResolver
from document_assembler import DocumentAssembler
from word_generator import WordGenerator, merge_front_documents


def make_png():
    """Smallest valid RGB PNG (1x1 red pixel)"""
    def chunk(tag, data):
        return struct.pack('>I', len(data)) + tag + data + struct.pack('>I', zlib.crc32(tag + data) & 0xffffffff)
    header = struct.pack('>IIBBBBB', 1, 1, 8, 2, 0, 0, 0)
    pixels = zlib.compress(b'\x00\xff\x00\x00')
    return b'\x89PNG\r\n\x1a\n' + chunk(b'IHDR', header) + chunk(b'IDAT', pixels) + chunk(b'IEND', b'')


BODY = """## Introduction
Opening paragraph with *emphasis*.

### Background
- first point
1. numbered step

{{figure1.1}}

{{figure1.2}}

| Site | Capacity |
|---|---|
| Kano | 5 MW |
"""

COMPILED = [{
    'key': '1', 'order_number': 1, 'label': '[1]',
    'display_text': '[1] T. A. Adeyemi, "Solar microgrids," 2019.',
}]


def build_document(image_bytes, abstract=None):
    assets = [{'placeholder_id': 'figure1.1', 'chapter_number': 1, 'caption': 'Site layout', 'data': image_bytes}]
    return DocumentAssembler().assemble(
        [{'number': 1, 'title': 'Introduction', 'content': BODY}],
        COMPILED, ImageResolver(assets), 'ieee', title='Solar Report', abstract=abstract,
    )


def paragraph_texts(doc):
    return [p.text for p in doc.paragraphs]


class TestWordGenerator(unittest.TestCase):

    def setUp(self):
        data = WordGenerator().generate(build_document(make_png(), abstract='A short abstract.'))
        self.doc = Document(BytesIO(data))
        self.texts = paragraph_texts(self.doc)

    def test_front_matter_and_sections(self):
        for expected in ['SOLAR REPORT', 'ABSTRACT', 'A short abstract.', 'TABLE OF CONTENTS',
                         'CHAPTER 1: INTRODUCTION', 'CHAPTER 1', 'INTRODUCTION', 'REFERENCES']:
            self.assertIn(expected, self.texts)
        self.assertLess(self.texts.index('TABLE OF CONTENTS'), self.texts.index('CHAPTER 1'))
        self.assertLess(self.texts.index('CHAPTER 1'), self.texts.index('REFERENCES'))

    def test_headings_use_word_styles(self):
        background = [p for p in self.doc.paragraphs if p.text == 'Background'][0]
        self.assertEqual(background.style.name, 'Heading 2')
        chapter = [p for p in self.doc.paragraphs if p.text == 'CHAPTER 1'][0]
        self.assertEqual(chapter.style.name, 'Heading 1')

    def test_inline_formatting_becomes_runs(self):
        paragraph = [p for p in self.doc.paragraphs if p.text.startswith('Opening paragraph')][0]
        italic = [run.text for run in paragraph.runs if run.italic]
        self.assertEqual(italic, ['emphasis'])

    def test_lists(self):
        self.assertIn('•\tfirst point', self.texts)
        self.assertIn('1.\tnumbered step', self.texts)

    def test_figure_picture_and_caption(self):
        self.assertEqual(len(self.doc.inline_shapes), 1)
        self.assertIn('Figure 1.1: Site layout', self.texts)
        self.assertIn('[Figure 1.2 — image not available]', self.texts)

    def test_table_header_row(self):
        self.assertEqual(len(self.doc.tables), 1)
        table = self.doc.tables[0]
        self.assertEqual(table.cell(0, 0).text, 'Site')
        self.assertEqual(table.cell(1, 1).text, '5 MW')
        self.assertTrue(table.cell(0, 0).paragraphs[0].runs[0].bold)

    def test_references(self):
        self.assertIn('[1] T. A. Adeyemi, "Solar microgrids," 2019.', self.texts)

    def test_page_numbers_in_footer(self):
        footer_xml = self.doc.sections[0].footer.paragraphs[0]._p.xml
        self.assertIn('PAGE', footer_xml)

    def test_body_typography(self):
        normal = self.doc.styles['Normal']
        self.assertEqual(normal.font.name, 'Times New Roman')
        self.assertEqual(normal.font.size.pt, 12)
        self.assertEqual(normal.paragraph_format.line_spacing, 1.5)


class TestImageFallback(unittest.TestCase):

    def test_undecodable_image_falls_back_to_text(self):
        data = WordGenerator().generate(build_document(b'not an image'))
        doc = Document(BytesIO(data))
        self.assertEqual(len(doc.inline_shapes), 0)
        texts = paragraph_texts(doc)
        self.assertIn('[Figure 1.1 — image not available]', texts)
        self.assertNotIn('Figure 1.1: Site layout', texts)

    def test_fallback_reuses_picture_paragraph(self):
        generator = WordGenerator()
        doc = Document(BytesIO(generator.generate(build_document(b'not an image'))))
        self.assertEqual(generator.images_inserted, 0)

        fallback = [p for p in doc.paragraphs if p.text == '[Figure 1.1 — image not available]']
        self.assertEqual(len(fallback), 1)
        self.assertEqual(len(fallback[0].runs), 1)
        self.assertTrue(fallback[0].runs[0].italic)
        self.assertEqual(fallback[0].alignment, WD_ALIGN_PARAGRAPH.CENTER)


class TestFigureCaptionNumbering(unittest.TestCase):

    def setUp(self):
        png = make_png()
        assets = [
            {'placeholder_id': 'figure1.1', 'chapter_number': 1, 'caption': 'Site layout', 'data': png},
            {'placeholder_id': 'figure1.2', 'chapter_number': 1, 'caption': 'Load curve', 'data': png},
            {'placeholder_id': 'figure2.1', 'chapter_number': 2, 'caption': 'Grid map', 'data': png},
        ]
        chapters = [
            {'number': 1, 'title': 'Introduction', 'content': 'Text.\n{{figure1.1}}\n{{figure1.2}}'},
            {'number': 2, 'title': 'Methods', 'content': 'Text.\n{{figure2.1}}'},
        ]
        document = DocumentAssembler().assemble(chapters, [], ImageResolver(assets), 'apa')
        self.doc = Document(BytesIO(WordGenerator().generate(document)))

    def test_caption_text_keeps_chapter_prefix(self):
        texts = paragraph_texts(self.doc)
        for expected in ['Figure 1.1: Site layout', 'Figure 1.2: Load curve', 'Figure 2.1: Grid map']:
            self.assertIn(expected, texts)

    def test_seq_field_restarts_at_figure_number(self):
        instructions = [el.text for el in self.doc.element.body.iter(qn('w:instrText'))
                        if 'SEQ Figure' in el.text]
        self.assertEqual(instructions, [
            ' SEQ Figure \\r 1 \\* ARABIC ',
            ' SEQ Figure \\r 2 \\* ARABIC ',
            ' SEQ Figure \\r 1 \\* ARABIC ',
        ])


class TestFrontDocuments(unittest.TestCase):

    def cover_bytes(self, text):
        cover = Document()
        cover.add_paragraph(text)
        output = BytesIO()
        cover.save(output)
        return output.getvalue()

    def test_cover_page_placed_first(self):
        data = WordGenerator().generate(build_document(make_png()),
                                        front_documents=[self.cover_bytes('COVER PAGE')])
        doc = Document(BytesIO(data))
        texts = paragraph_texts(doc)
        self.assertLess(texts.index('COVER PAGE'), texts.index('TABLE OF CONTENTS'))
        self.assertGreaterEqual(len(doc.sections), 2)
        self.assertIn('PAGE', doc.sections[-1].footer.paragraphs[0]._p.xml)

    def test_multiple_front_documents_keep_order(self):
        report = WordGenerator(include_page_numbers=False).generate(build_document(make_png()))
        merged = merge_front_documents(
            [self.cover_bytes('COVER PAGE'), self.cover_bytes('DECLARATION')], report,
            restart_numbering=False,
        )
        texts = paragraph_texts(Document(BytesIO(merged)))
        self.assertLess(texts.index('COVER PAGE'), texts.index('DECLARATION'))
        self.assertLess(texts.index('DECLARATION'), texts.index('CHAPTER 1'))


if __name__ == '__main__':
    unittest.main()
