# word_generator.py
# Serialize the assembled report model into a .docx file

import logging
from io import BytesIO

from docx import Document
from docx.shared import Pt, Inches, RGBColor
from docx.enum.text import WD_ALIGN_PARAGRAPH, WD_BREAK
from docx.enum.section import WD_SECTION
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docxcompose.composer import Composer

logger = logging.getLogger(__name__)

FONT_NAME = 'Times New Roman'
FONT_SIZE = 12
MAX_IMAGE_WIDTH = 6.0  # inches, page width minus 1" margins with some slack
DEFAULT_IMAGE_WIDTH = 5.5
TABLE_HEADER_SHADING = 'E0E0E0'
TOC_INDENT = {1: 0, 2: 0.3, 3: 0.6}


class WordGenerator:
    """Generate the Word report from an assembled document model"""

    def __init__(self, include_page_numbers=True, image_width=DEFAULT_IMAGE_WIDTH):
        self.doc = None
        self.include_page_numbers = include_page_numbers
        self.image_width = min(image_width, MAX_IMAGE_WIDTH)
        self.images_inserted = 0

    def _set_page_numbering(self, section, fmt='decimal', start=None):
        """Set page numbering format and start value for a section."""
        sectPr = section._sectPr
        pgNumType = sectPr.find(qn('w:pgNumType'))
        if pgNumType is None:
            pgNumType = OxmlElement('w:pgNumType')
            sectPr.append(pgNumType)

        pgNumType.set(qn('w:fmt'), fmt)
        if start is not None:
            pgNumType.set(qn('w:start'), str(start))

    def _add_page_number_to_footer(self, section):
        """Add a centered PAGE field to the footer of a section."""
        footer = section.footer
        if footer.paragraphs:
            p = footer.paragraphs[0]
            p.clear()
        else:
            p = footer.add_paragraph()

        p.alignment = WD_ALIGN_PARAGRAPH.CENTER
        run = p.add_run()

        fldChar1 = OxmlElement('w:fldChar')
        fldChar1.set(qn('w:fldCharType'), 'begin')
        run._r.append(fldChar1)

        instrText = OxmlElement('w:instrText')
        instrText.text = "PAGE"
        run._r.append(instrText)

        fldChar2 = OxmlElement('w:fldChar')
        fldChar2.set(qn('w:fldCharType'), 'end')
        run._r.append(fldChar2)

    def generate(self, document, front_documents=None):
        """
        Build the .docx for an assembled document.

        Args:
            document: Model returned by DocumentAssembler.assemble
            front_documents: Optional list of .docx payloads (bytes) placed
                before the report, e.g. a cover page

        Returns:
            bytes of the finished .docx
        """
        self.doc = Document()
        self.images_inserted = 0

        for section in self.doc.sections:
            section.top_margin = Inches(1)
            section.bottom_margin = Inches(1)
            section.left_margin = Inches(1)
            section.right_margin = Inches(1)

        self._setup_styles()

        if self.include_page_numbers:
            body_section = self.doc.sections[0]
            self._set_page_numbering(body_section, fmt='decimal', start=1)
            self._add_page_number_to_footer(body_section)

        first_page = True
        if document.get('title'):
            self._add_title(document['title'])
            first_page = False

        if document.get('abstract'):
            if not first_page:
                self._add_page_break()
            self._add_abstract(document['abstract'])
            first_page = False

        for section in document.get('sections', []):
            if not first_page:
                self._add_page_break()
            first_page = False

            section_type = section.get('type')
            if section_type == 'toc':
                self._add_toc(section)
            elif section_type == 'chapter':
                self._add_chapter(section)
            elif section_type == 'references':
                self._add_references(section)
            else:
                logger.warning(f"Skipping unknown section type: {section_type}")

        output = BytesIO()
        self.doc.save(output)
        data = output.getvalue()

        if front_documents:
            data = merge_front_documents(front_documents, data, self.include_page_numbers)

        logger.info(f"Generated document ({len(data)} bytes, {self.images_inserted} images)")
        return data

    def _setup_styles(self):
        """Configure document styles"""
        styles = self.doc.styles

        normal = styles['Normal']
        normal.font.name = FONT_NAME
        normal.font.size = Pt(FONT_SIZE)
        normal.paragraph_format.line_spacing = 1.5
        normal.paragraph_format.alignment = WD_ALIGN_PARAGRAPH.JUSTIFY
        normal.paragraph_format.space_after = Pt(6)
        normal.paragraph_format.left_indent = Pt(0)
        normal.paragraph_format.first_line_indent = Pt(0)

        for level in (1, 2, 3):
            try:
                heading = styles[f'Heading {level}']
            except KeyError:
                continue
            heading.font.name = FONT_NAME
            heading.font.bold = True
            heading.font.size = Pt(FONT_SIZE)
            heading.font.color.rgb = RGBColor(0, 0, 0)
            heading.paragraph_format.line_spacing = 1.5
            heading.paragraph_format.space_before = Pt(12)
            heading.paragraph_format.space_after = Pt(6)
            heading.paragraph_format.left_indent = Pt(0)
            heading.paragraph_format.first_line_indent = Pt(0)

    def _style_run(self, run, bold=None, italic=None):
        run.font.name = FONT_NAME
        run.font.size = Pt(FONT_SIZE)
        run.font.color.rgb = RGBColor(0, 0, 0)
        if bold is not None:
            run.bold = bold
        if italic is not None:
            run.italic = italic
        return run

    def _add_page_break(self):
        self.doc.add_paragraph().add_run().add_break(WD_BREAK.PAGE)

    def _add_centered_heading(self, text, space_after=12):
        """Bold centered heading paragraph kept out of Word's heading styles"""
        para = self.doc.add_paragraph()
        para.alignment = WD_ALIGN_PARAGRAPH.CENTER
        para.paragraph_format.space_after = Pt(space_after)
        self._style_run(para.add_run(text), bold=True)
        return para

    def _add_spans(self, para, spans):
        for span in spans:
            text, bold, italic = span
            if text:
                self._style_run(para.add_run(text), bold=bold, italic=italic)

    def _add_title(self, title_text):
        """Add document title"""
        para = self._add_centered_heading(title_text.upper(), space_after=24)
        para.paragraph_format.space_before = Pt(72)

    def _add_abstract(self, abstract):
        self._add_centered_heading('ABSTRACT')
        for block in abstract.split('\n\n'):
            block = ' '.join(line.strip() for line in block.splitlines()).strip()
            if block:
                para = self.doc.add_paragraph()
                self._style_run(para.add_run(block))

    def _add_toc(self, section):
        """Static table of contents: chapter lines bold, sub-sections indented"""
        self._add_centered_heading(section.get('heading', 'TABLE OF CONTENTS'))

        for entry in section.get('entries', []):
            level = entry.get('level', 1)
            para = self.doc.add_paragraph()
            para.alignment = WD_ALIGN_PARAGRAPH.LEFT
            para.paragraph_format.left_indent = Inches(TOC_INDENT.get(level, 0.6))
            para.paragraph_format.space_after = Pt(2)
            para.paragraph_format.line_spacing = 1.15
            if level == 1:
                para.paragraph_format.space_before = Pt(6)
            self._style_run(para.add_run(entry['text']), bold=level == 1)

    def _add_chapter(self, section):
        heading = self._add_centered_heading(section['heading'], space_after=0)
        heading.style = self.doc.styles['Heading 1']
        heading.alignment = WD_ALIGN_PARAGRAPH.CENTER
        if section.get('chapter_title'):
            self._add_centered_heading(section['chapter_title'].upper(), space_after=18)

        table_rows = []
        for node in section.get('content', []):
            if node['type'] == 'table_row':
                if table_rows and table_rows[-1]['table_index'] != node['table_index']:
                    self._add_table(table_rows)
                    table_rows = []
                table_rows.append(node)
                continue

            if table_rows:
                self._add_table(table_rows)
                table_rows = []
            self._add_node(node)

        if table_rows:
            self._add_table(table_rows)

    def _add_node(self, node):
        node_type = node['type']

        if node_type == 'heading':
            # Markdown ## / ### / #### map onto Word heading levels 1-3
            para = self.doc.add_heading(level=min(node['level'] + 1, 3))
            para.alignment = WD_ALIGN_PARAGRAPH.LEFT
            self._add_spans(para, node['spans'])
            for run in para.runs:
                run.bold = True
        elif node_type == 'bullet':
            para = self.doc.add_paragraph()
            para.paragraph_format.left_indent = Inches(0.5)
            para.paragraph_format.first_line_indent = Inches(-0.25)
            self._style_run(para.add_run('•\t'))
            self._add_spans(para, node['spans'])
        elif node_type == 'numbered':
            para = self.doc.add_paragraph()
            para.paragraph_format.left_indent = Inches(0.5)
            para.paragraph_format.first_line_indent = Inches(-0.25)
            self._style_run(para.add_run(f"{node['number']}.\t"))
            self._add_spans(para, node['spans'])
        elif node_type == 'figure':
            self._insert_image(node)
        elif node_type == 'paragraph':
            para = self.doc.add_paragraph()
            if node.get('alignment') == 'center':
                para.alignment = WD_ALIGN_PARAGRAPH.CENTER
            self._add_spans(para, node['spans'])
        else:
            logger.warning(f"Skipping unknown content node: {node_type}")

    def _insert_image(self, node):
        """
        Insert a figure picture followed by its caption.

        Falls back to the placeholder text when the bytes cannot be decoded
        as an image.
        """
        para = self.doc.add_paragraph()
        para.alignment = WD_ALIGN_PARAGRAPH.CENTER
        para.paragraph_format.space_before = Pt(6)
        para.paragraph_format.space_after = Pt(3)
        para.paragraph_format.keep_with_next = True

        try:
            para.add_run().add_picture(BytesIO(node['image']), width=Inches(self.image_width))
            self.images_inserted += 1
        except Exception as e:
            logger.warning(f"Could not insert image {node.get('placeholder_id')}: {str(e)}")
            para.clear()
            self._style_run(para.add_run(f"[{node['label']} — image not available]"), italic=True)
            para.paragraph_format.keep_with_next = False
            return

        self._add_figure_caption(node['chapter'], node['figure'], node.get('caption'))

    def _add_figure_caption(self, chapter, figure, title):
        """
        Add "Figure N.M: title" below a picture.

        The chapter number is plain text; M is a SEQ field reset to the
        figure's own number with \\r, so updating fields in Word (or building
        a List of Figures) keeps "N.M" instead of renumbering document-wide.
        """
        para = self.doc.add_paragraph()
        para.alignment = WD_ALIGN_PARAGRAPH.CENTER
        para.paragraph_format.space_before = Pt(6)
        para.paragraph_format.space_after = Pt(12)
        para.paragraph_format.line_spacing = 1.5

        self._style_run(para.add_run(f"Figure {chapter}."), bold=True, italic=True)

        run_seq = para.add_run()
        fldChar1 = OxmlElement('w:fldChar')
        fldChar1.set(qn('w:fldCharType'), 'begin')

        instrText = OxmlElement('w:instrText')
        instrText.set(qn('xml:space'), 'preserve')
        instrText.text = f' SEQ Figure \\r {figure} \\* ARABIC '

        fldChar2 = OxmlElement('w:fldChar')
        fldChar2.set(qn('w:fldCharType'), 'separate')

        # Cached result shown until Word updates fields
        num_text = OxmlElement('w:t')
        num_text.text = str(figure)

        fldChar3 = OxmlElement('w:fldChar')
        fldChar3.set(qn('w:fldCharType'), 'end')

        run_seq._r.append(fldChar1)
        run_seq._r.append(instrText)
        run_seq._r.append(fldChar2)
        run_seq._r.append(num_text)
        run_seq._r.append(fldChar3)
        self._style_run(run_seq, bold=True, italic=True)

        if title:
            self._style_run(para.add_run(f": {title}"), italic=True)

    def _shade_cell(self, cell, fill):
        tcPr = cell._tc.get_or_add_tcPr()
        shd = OxmlElement('w:shd')
        shd.set(qn('w:val'), 'clear')
        shd.set(qn('w:color'), 'auto')
        shd.set(qn('w:fill'), fill)
        tcPr.append(shd)

    def _add_table(self, rows):
        """Add one table from consecutive table_row nodes; row 0 is the header"""
        num_cols = max(len(row['cells']) for row in rows)
        table = self.doc.add_table(rows=len(rows), cols=num_cols)
        table.style = 'Table Grid'
        table.autofit = True

        for row_idx, row in enumerate(rows):
            for col_idx in range(num_cols):
                cell = table.rows[row_idx].cells[col_idx]
                spans = row['cells'][col_idx] if col_idx < len(row['cells']) else []
                paragraph = cell.paragraphs[0]
                self._add_spans(paragraph, spans)

                paragraph.paragraph_format.line_spacing = 1.0
                paragraph.paragraph_format.space_before = Pt(2)
                paragraph.paragraph_format.space_after = Pt(2)

                if row['is_header']:
                    paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
                    for run in paragraph.runs:
                        run.bold = True
                    self._shade_cell(cell, TABLE_HEADER_SHADING)
                else:
                    paragraph.alignment = WD_ALIGN_PARAGRAPH.LEFT

        spacing = self.doc.add_paragraph()
        spacing.paragraph_format.space_before = Pt(6)

    def _add_references(self, section):
        self._add_centered_heading(section.get('heading', 'REFERENCES'))
        for node in section.get('content', []):
            para = self.doc.add_paragraph()
            para.alignment = WD_ALIGN_PARAGRAPH.LEFT
            # Hanging indent
            para.paragraph_format.left_indent = Inches(0.5)
            para.paragraph_format.first_line_indent = Inches(-0.5)
            self._add_spans(para, node['spans'])


def merge_front_documents(front_documents, report_bytes, restart_numbering=True):
    """
    Place front documents (cover page, declaration, ...) before the report.

    Args:
        front_documents: list of .docx payloads in the order they should appear
        report_bytes: The generated report
        restart_numbering: Restart decimal page numbers at 1 on the report body

    Returns:
        bytes of the merged .docx
    """
    base = Document(BytesIO(front_documents[0]))
    composer = Composer(base)
    for payload in front_documents[1:]:
        composer.doc.add_section(WD_SECTION.NEW_PAGE)
        composer.append(Document(BytesIO(payload)))

    report = Document(BytesIO(report_bytes))
    body_section = composer.doc.add_section(WD_SECTION.NEW_PAGE)
    src_section = report.sections[0]
    body_section.left_margin = src_section.left_margin
    body_section.right_margin = src_section.right_margin
    body_section.top_margin = src_section.top_margin
    body_section.bottom_margin = src_section.bottom_margin
    composer.append(report)

    output = BytesIO()
    composer.save(output)

    if not restart_numbering:
        return output.getvalue()

    # The merge links the body footer to the front matter; unlink it and restart at 1
    merged = Document(BytesIO(output.getvalue()))
    body_section = merged.sections[-1]
    body_section.footer.is_linked_to_previous = False
    generator = WordGenerator()
    generator._set_page_numbering(body_section, fmt='decimal', start=1)
    generator._add_page_number_to_footer(body_section)

    output = BytesIO()
    merged.save(output)
    logger.info(f"Merged {len(front_documents)} front document(s) before the report")
    return output.getvalue()
