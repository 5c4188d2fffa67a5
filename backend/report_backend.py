# report_backend.py
# Chapter report service: citation registry and .docx export over HTTP

from flask import Flask, request, jsonify, send_file
from flask_cors import CORS
import re
import os
import sys
import json
import uuid
import base64
import binascii
from datetime import datetime
import logging

from citation_styles import get_citation_style, get_citation_style_options
from reference_extractor import parse_chapter_references
from reference_registry import (
    ReferenceRegistry, JsonRegistryStore, RETAIN, empty_state, merge_references,
    compile_references,
)
from image_resolver import (
    ImageResolver, AssetFetcher, register_image, find_figure_placeholders,
    find_unreferenced_images, find_unmatched_placeholders, SUPPORTED_FORMATS,
    DEFAULT_FETCH_TIMEOUT, DEFAULT_FETCH_WORKERS,
)
from document_assembler import DocumentAssembler, MissingChaptersError, normalize_chapter
from word_generator import WordGenerator

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

# Configuration
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_FOLDER = os.environ.get('REPORT_DATA_FOLDER', os.path.join(BASE_DIR, 'data'))
OUTPUT_FOLDER = os.environ.get('REPORT_OUTPUT_FOLDER', os.path.join(BASE_DIR, 'outputs'))
ASSET_FOLDER = os.environ.get('REPORT_ASSET_FOLDER', os.path.join(BASE_DIR, 'assets'))
IMAGE_FETCH_TIMEOUT = float(os.environ.get('IMAGE_FETCH_TIMEOUT', DEFAULT_FETCH_TIMEOUT))
IMAGE_FETCH_WORKERS = int(os.environ.get('IMAGE_FETCH_WORKERS', DEFAULT_FETCH_WORKERS))
os.makedirs(DATA_FOLDER, exist_ok=True)
os.makedirs(OUTPUT_FOLDER, exist_ok=True)
os.makedirs(ASSET_FOLDER, exist_ok=True)

DOCX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.wordprocessingml.document'

registry = ReferenceRegistry(JsonRegistryStore(DATA_FOLDER))


def _safe_name(value):
    return re.sub(r'[^A-Za-z0-9_\-]', '_', str(value))


def _image_index_path(project_id):
    return os.path.join(DATA_FOLDER, f"{_safe_name(project_id)}_images.json")


def load_image_assets(project_id):
    """Image assets uploaded for a project (metadata only, bytes live in ASSET_FOLDER)"""
    path = _image_index_path(project_id)
    if not os.path.exists(path):
        return []
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_image_assets(project_id, assets):
    with open(_image_index_path(project_id), 'w', encoding='utf-8') as f:
        json.dump(assets, f, indent=2)


def _decode_base64(value, what):
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 payload for {what}") from e


def _posted_image_assets(images):
    """Normalize image assets posted with an export request."""
    assets = []
    for image in images or []:
        asset = dict(image)
        if asset.get('data') is not None:
            asset['data'] = _decode_base64(asset['data'], asset.get('placeholder_id', 'image'))
        assets.append(asset)
    return assets


def _export_references(project_id, style, chapters):
    """
    Compiled reference list for an export.

    Uses the project's stored registry; when nothing was recorded for the
    project, the posted chapters' reference blocks are merged on the fly.
    """
    state = registry.get_state(project_id)
    if not state['references'] and style.has_references:
        state = empty_state(project_id)
        for chapter in sorted((normalize_chapter(c) for c in chapters), key=lambda c: c['number']):
            number = chapter['number']
            references = parse_chapter_references(style.style_id, chapter['body'], number)
            state = merge_references(state, number, references)
    return compile_references(state, style.style_id)


# Flask Routes
@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'version': '1.0.0',
        'citation_styles': len(get_citation_style_options()),
    })


@app.route('/api/citation-styles', methods=['GET'])
def citation_styles():
    """Citation style options for the project setup form"""
    return jsonify({'styles': get_citation_style_options()})


@app.route('/api/projects/<project_id>/chapters/<int:chapter_number>/references', methods=['POST'])
def record_chapter_references(project_id, chapter_number):
    """Parse a generated chapter's references and merge them into the project registry"""
    data = request.get_json(silent=True) or {}
    if 'content' not in data:
        return jsonify({'error': 'No chapter content provided'}), 400

    try:
        result = registry.record_chapter(
            project_id,
            data.get('style'),
            chapter_number,
            data['content'] or '',
            is_final=bool(data.get('is_final', False)),
            policy=data.get('policy', RETAIN),
        )
        return jsonify(result)
    except ValueError as e:
        logger.warning(f"Rejected references for project {project_id}: {str(e)}")
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error recording references for project {project_id}: {str(e)}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/projects/<project_id>/references/compile', methods=['POST'])
def compile_project_references(project_id):
    """Compile the final ordered reference list"""
    data = request.get_json(silent=True) or {}
    try:
        compiled = registry.compile(project_id, data.get('style'))
        return jsonify({'project_id': project_id, 'references': compiled, 'count': len(compiled)})
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error compiling references for project {project_id}: {str(e)}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/projects/<project_id>/references', methods=['GET'])
def get_project_references(project_id):
    """Stored registry state for a project"""
    try:
        return jsonify(registry.get_state(project_id))
    except Exception as e:
        logger.error(f"Error loading references for project {project_id}: {str(e)}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/projects/<project_id>/chapters/<int:chapter_number>/images', methods=['POST'])
def upload_chapter_image(project_id, chapter_number):
    """Upload an image for a chapter; it becomes the chapter's next figure"""
    if 'file' not in request.files:
        return jsonify({'error': 'No file uploaded'}), 400

    file = request.files['file']
    if file.filename == '':
        return jsonify({'error': 'Empty filename'}), 400

    content_type = file.mimetype or 'image/png'
    if content_type not in SUPPORTED_FORMATS:
        return jsonify({'error': f"Unsupported image type: {content_type}"}), 400

    try:
        file_ext = os.path.splitext(file.filename)[1].lower() or f".{SUPPORTED_FORMATS[content_type]}"
        storage_key = f"{_safe_name(project_id)}_{uuid.uuid4().hex}{file_ext}"
        file.save(os.path.join(ASSET_FOLDER, storage_key))

        assets = load_image_assets(project_id)
        asset = register_image(
            assets,
            chapter_number,
            request.form.get('caption', ''),
            storage_key=storage_key,
            content_type=content_type,
        )
        save_image_assets(project_id, assets)
        logger.info(f"Stored {asset['placeholder_id']} for project {project_id}")

        return jsonify({'image': asset, 'placeholder': f"{{{{{asset['placeholder_id']}}}}}"}), 201
    except Exception as e:
        logger.error(f"Error storing image for project {project_id}: {str(e)}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/projects/<project_id>/chapters/<int:chapter_number>/image-check', methods=['POST'])
def check_chapter_images(project_id, chapter_number):
    """Report uploaded images a chapter never places and placeholders with no image"""
    data = request.get_json(silent=True) or {}
    content = data.get('content') or ''
    try:
        assets = load_image_assets(project_id) + _posted_image_assets(data.get('images'))
        unreferenced = find_unreferenced_images(content, assets, chapter_number)
        return jsonify({
            'chapter_number': chapter_number,
            'placeholders': find_figure_placeholders(content),
            'unreferenced_images': [a.get('placeholder_id') for a in unreferenced],
            'unmatched_placeholders': find_unmatched_placeholders(content, assets),
        })
    except ValueError as e:
        return jsonify({'error': str(e)}), 400


@app.route('/api/projects/<project_id>/export', methods=['POST'])
def export_report(project_id):
    """Assemble all chapters and return the finished Word document"""
    data = request.get_json(silent=True) or {}

    try:
        chapters = data.get('chapters')
        if chapters is None:
            raise MissingChaptersError()
        style = get_citation_style(data.get('style'))

        compiled = _export_references(project_id, style, chapters)
        assets = load_image_assets(project_id) + _posted_image_assets(data.get('images'))
        resolver = ImageResolver(
            assets,
            fetcher=AssetFetcher(asset_folder=ASSET_FOLDER),
            timeout=IMAGE_FETCH_TIMEOUT,
            max_workers=IMAGE_FETCH_WORKERS,
        )

        document = DocumentAssembler().assemble(
            chapters, compiled, resolver, style.style_id,
            title=data.get('title'),
            abstract=data.get('abstract'),
        )

        front_documents = [_decode_base64(payload, 'front document')
                           for payload in data.get('front_documents') or []]
        generator = WordGenerator(include_page_numbers=bool(data.get('include_page_numbers', True)))
        docx_bytes = generator.generate(document, front_documents=front_documents)

        job_id = str(uuid.uuid4())
        output_path = os.path.join(OUTPUT_FOLDER, f"{_safe_name(project_id)}_{job_id}_report.docx")
        with open(output_path, 'wb') as f:
            f.write(docx_bytes)
        logger.info(f"Exported project {project_id}: {document['stats']}")
    except ValueError as e:
        logger.warning(f"Rejected export for project {project_id}: {str(e)}")
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error exporting project {project_id}: {str(e)}")
        return jsonify({'error': str(e)}), 500

    title = data.get('title') or 'report'
    download_name = f"{_safe_name(title)}.docx"

    return send_file(
        output_path,
        as_attachment=True,
        download_name=download_name,
        mimetype=DOCX_MIMETYPE,
    )


if __name__ == '__main__':
    # Only start the server if not running tests
    if not any('unittest' in arg or 'test' in arg for arg in sys.argv):
        print(f"Server starting at http://localhost:5000")
        app.run(debug=True, host='0.0.0.0', port=5000)
