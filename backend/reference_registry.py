# reference_registry.py
# Project-wide bibliography: merge per-chapter references, compile the final list

import os
import re
import json
import logging
from copy import deepcopy
from datetime import datetime

from citation_styles import get_citation_style
from reference_extractor import parse_chapter_references, extract_in_text_citations

logger = logging.getLogger(__name__)

# Regeneration policies for a chapter that is merged again
RETAIN = 'retain'
PRUNE = 'prune'
REGENERATION_POLICIES = (RETAIN, PRUNE)

NUMERIC_PREFIX_PATTERN = re.compile(r'^\[\d+\]\s*')


def empty_state(project_id=None):
    return {'project_id': project_id, 'references': []}


def _new_record(reference, chapter_number):
    return {
        'key': reference['key'],
        'raw_text': reference.get('raw_text', ''),
        'author': reference.get('author'),
        'year': reference.get('year'),
        'first_used_chapter': chapter_number,
        'used_in_chapters': [chapter_number],
        'order_number': None,
        'style': reference.get('style'),
    }


def release_chapter(state, chapter_number, keep_keys=()):
    """
    Withdraw a chapter's usage from every reference not listed in keep_keys.

    References left with no usage are removed; the others get their
    first_used_chapter recomputed from the remaining usage.

    Returns:
        A new registry state; the input is not modified
    """
    keep_keys = set(keep_keys)
    new_state = deepcopy(state)
    remaining = []

    for record in new_state['references']:
        if record['key'] not in keep_keys and chapter_number in record['used_in_chapters']:
            record['used_in_chapters'] = [c for c in record['used_in_chapters'] if c != chapter_number]
            if not record['used_in_chapters']:
                logger.info(f"Dropping stale reference {record['key']} (only used in chapter {chapter_number})")
                continue
            record['first_used_chapter'] = min(record['used_in_chapters'])
        remaining.append(record)

    new_state['references'] = remaining
    return new_state


def merge_references(state, chapter_number, references, policy=RETAIN):
    """
    Merge a chapter's parsed references into the registry state.

    Unknown keys are appended with this chapter as their first use. Known keys
    get the chapter added to used_in_chapters; first_used_chapter stays the
    lowest chapter observed. Merging the same input twice yields the same
    state as merging it once.

    Args:
        state: Current registry state
        chapter_number: Chapter the references were parsed from
        references: Reference dicts from reference_extractor
        policy: RETAIN keeps references the chapter no longer cites,
            PRUNE withdraws the chapter from them first

    Returns:
        A new registry state; the input is not modified
    """
    if policy not in REGENERATION_POLICIES:
        raise ValueError(f"Unknown regeneration policy: {policy!r}")

    if policy == PRUNE:
        new_state = release_chapter(state, chapter_number, keep_keys=[ref['key'] for ref in references])
    else:
        new_state = deepcopy(state)

    index = {record['key']: record for record in new_state['references']}

    for reference in references:
        record = index.get(reference['key'])
        if record is None:
            record = _new_record(reference, chapter_number)
            new_state['references'].append(record)
            index[record['key']] = record
            continue

        if chapter_number not in record['used_in_chapters']:
            record['used_in_chapters'] = sorted(record['used_in_chapters'] + [chapter_number])
        record['first_used_chapter'] = min(record['first_used_chapter'], chapter_number)

    return new_state


def _first_use_order(records):
    # sorted() is stable, so equal chapters keep insertion order
    return sorted(records, key=lambda record: record['first_used_chapter'])


def _author_order(records):
    def sort_key(record):
        author = (record.get('author') or '').strip()
        return (not author, author.casefold(), record.get('raw_text') or '')
    return sorted(records, key=sort_key)


ORDERING_RULES = {
    'first_use': _first_use_order,
    'author': _author_order,
}


def compile_references(state, style_id):
    """
    Produce the final ordered reference list.

    IEEE-style numbering orders by first use and relabels every entry [n];
    author-year styles order alphabetically by author and keep their keys.
    Styles without references compile to an empty list.

    Returns:
        list of reference dicts with 'order_number', 'label' and 'display_text'

    Raises:
        UnsupportedCitationStyleError: for unknown style ids
    """
    style = get_citation_style(style_id)
    if style.ordering is None:
        return []

    ordered = ORDERING_RULES[style.ordering](deepcopy(state.get('references', [])))

    for number, record in enumerate(ordered, start=1):
        record['order_number'] = number
        if style.renumber:
            record['label'] = f"[{number}]"
            record['display_text'] = f"[{number}] {NUMERIC_PREFIX_PATTERN.sub('', record['raw_text'])}"
        else:
            record['label'] = record['key']
            record['display_text'] = record['raw_text']

    logger.info(f"Compiled {len(ordered)} references ({style.style_id})")
    return ordered


def apply_order_numbers(state, compiled):
    """Copy compiled order numbers back onto the stored records."""
    numbers = {record['key']: record['order_number'] for record in compiled}
    new_state = deepcopy(state)
    for record in new_state['references']:
        record['order_number'] = numbers.get(record['key'])
    return new_state


class JsonRegistryStore:
    """Persist one registry state per project as a JSON file."""

    def __init__(self, folder):
        self.folder = folder
        os.makedirs(folder, exist_ok=True)

    def _path(self, project_id):
        safe_id = re.sub(r'[^A-Za-z0-9_\-]', '_', str(project_id))
        return os.path.join(self.folder, f"{safe_id}_references.json")

    def load(self, project_id):
        path = self._path(project_id)
        if not os.path.exists(path):
            return empty_state(project_id)
        with open(path, 'r', encoding='utf-8') as f:
            state = json.load(f)
        state.setdefault('references', [])
        return state

    def save(self, project_id, state):
        path = self._path(project_id)
        payload = dict(state, project_id=project_id, updated_at=datetime.now().isoformat())
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)


class ReferenceRegistry:
    """
    Registry operations bound to a persistent store.

    Every call loads the project's state, applies a pure state transition and
    saves the result, so nothing is cached between chapter-generation calls.
    """

    def __init__(self, store):
        self.store = store

    def get_state(self, project_id):
        return self.store.load(project_id)

    def merge(self, project_id, chapter_number, references, policy=RETAIN):
        """
        Merge references into the stored registry.

        Returns:
            dict with 'stored' (new keys), 'updated' (known keys) and 'total'
        """
        state = self.store.load(project_id)
        known_keys = {record['key'] for record in state['references']}
        incoming_keys = []
        for reference in references:
            if reference['key'] not in incoming_keys:
                incoming_keys.append(reference['key'])

        new_state = merge_references(state, chapter_number, references, policy=policy)
        self.store.save(project_id, new_state)

        stored = sum(1 for key in incoming_keys if key not in known_keys)
        summary = {
            'stored': stored,
            'updated': len(incoming_keys) - stored,
            'total': len(new_state['references']),
        }
        logger.info(f"Project {project_id} chapter {chapter_number}: "
                    f"{summary['stored']} stored, {summary['updated']} updated")
        return summary

    def compile(self, project_id, style_id):
        """Compile the final list and persist the assigned order numbers."""
        state = self.store.load(project_id)
        compiled = compile_references(state, style_id)
        if compiled:
            self.store.save(project_id, apply_order_numbers(state, compiled))
        return compiled

    def record_chapter(self, project_id, style_id, chapter_number, content,
                       is_final=False, policy=RETAIN):
        """
        Handle one chapter-generation event.

        Parses the chapter's reference block, merges it, and on the final
        chapter compiles the whole bibliography.

        Returns:
            dict with 'references' (parsed), 'in_text_citations', merge counts
            and 'compiled' (list, empty unless is_final)
        """
        style = get_citation_style(style_id)
        references = parse_chapter_references(style.style_id, content, chapter_number)
        citations = extract_in_text_citations(content, style.style_id)

        summary = {'stored': 0, 'updated': 0, 'total': len(self.get_state(project_id)['references'])}
        if style.has_references:
            summary = self.merge(project_id, chapter_number, references, policy=policy)

        compiled = self.compile(project_id, style.style_id) if is_final else []

        return {
            'chapter_number': chapter_number,
            'style': style.style_id,
            'references': references,
            'in_text_citations': citations,
            'stored': summary['stored'],
            'updated': summary['updated'],
            'total': summary['total'],
            'compiled': compiled,
        }
