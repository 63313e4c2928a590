"""Tokenization and stemming for lexical entity matching."""

import re
from functools import lru_cache
from typing import List, Set, Tuple

from nltk.stem import PorterStemmer

DEFAULT_MIN_TOKEN_LENGTH = 4

STOPWORDS = frozenset([
    # Articles, pronouns, prepositions
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'from', 'as', 'is', 'was', 'are', 'were', 'been',
    'be', 'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'must', 'shall', 'can', 'need', 'this', 'that',
    'these', 'those', 'i', 'you', 'he', 'she', 'it', 'we', 'they', 'what',
    'which', 'who', 'whom', 'when', 'where', 'why', 'how', 'all', 'each',
    'every', 'both', 'few', 'more', 'most', 'other', 'some', 'such', 'no',
    'not', 'only', 'own', 'same', 'so', 'than', 'too', 'very', 'just', 'also',
    'about', 'after', 'before', 'being', 'between', 'into', 'through', 'during',
    'above', 'below', 'out', 'off', 'over', 'under', 'again', 'further', 'then',
    'once', 'here', 'there', 'any', 'now', 'even', 'much', 'back',

    # Common verbs ("Completed" must not match "Complete Guide")
    'going', 'went', 'gone', 'come', 'came', 'coming',
    'work', 'worked', 'working', 'works',
    'make', 'made', 'making', 'makes',
    'take', 'took', 'taken', 'taking', 'takes',
    'give', 'gave', 'given', 'giving', 'gives',
    'find', 'found', 'finding', 'finds',
    'know', 'knew', 'known', 'knowing', 'knows',
    'think', 'thought', 'thinking', 'thinks',
    'look', 'looked', 'looking', 'looks',
    'want', 'wanted', 'wanting', 'wants',
    'tell', 'told', 'telling', 'tells',
    'keep', 'kept', 'keeping', 'keeps',
    'start', 'started', 'starting', 'starts',
    'complete', 'completed', 'completing', 'completes',
    'finish', 'finished', 'finishing', 'finishes',
    'begin', 'began', 'begun', 'beginning', 'begins',
    'end', 'ended', 'ending', 'ends',
    'add', 'added', 'adding', 'adds',
    'update', 'updated', 'updating', 'updates',
    'change', 'changed', 'changing', 'changes',
    'remove', 'removed', 'removing', 'removes',
    'fix', 'fixed', 'fixing', 'fixes',
    'create', 'created', 'creating', 'creates',
    'build', 'built', 'building', 'builds',
    'run', 'ran', 'running', 'runs',
    'test', 'tested', 'testing', 'tests',
    'release', 'released', 'releasing', 'releases',
    'use', 'used', 'using', 'uses',
    'get', 'got', 'gotten', 'getting', 'gets',
    'set', 'setting', 'sets',
    'put', 'putting', 'puts',
    'try', 'tried', 'trying', 'tries',
    'move', 'moved', 'moving', 'moves',
    'show', 'showed', 'shown', 'showing', 'shows',
    'help', 'helped', 'helping', 'helps',
    'read', 'reading', 'reads',
    'write', 'wrote', 'written', 'writing', 'writes',
    'call', 'called', 'calling', 'calls',
    'feel', 'felt', 'feeling', 'feels',
    'seem', 'seemed', 'seeming', 'seems',
    'turn', 'turned', 'turning', 'turns',
    'leave', 'left', 'leaving', 'leaves',
    'play', 'played', 'playing', 'plays',
    'hold', 'held', 'holding', 'holds',
    'bring', 'brought', 'bringing', 'brings',
    'happen', 'happened', 'happening', 'happens',
    'include', 'included', 'including', 'includes',
    'continue', 'continued', 'continuing', 'continues',
    'send', 'sent', 'sending', 'sends',
    'receive', 'received', 'receiving', 'receives',
    'follow', 'followed', 'following', 'follows',
    'stop', 'stopped', 'stopping', 'stops',
    'open', 'opened', 'opening', 'opens',
    'close', 'closed', 'closing', 'closes',
    'done', 'doing',

    # Time words
    'today', 'tomorrow', 'yesterday',
    'daily', 'weekly', 'monthly', 'yearly', 'annually',
    'morning', 'afternoon', 'evening', 'night',
    'week', 'month', 'year', 'hour', 'minute', 'second',
    'time', 'date', 'day', 'days', 'weeks', 'months', 'years',
    'currently', 'recently', 'later', 'earlier', 'soon',
    'always', 'never', 'sometimes', 'often', 'usually', 'rarely',

    # Filler
    'thing', 'things', 'stuff',
    'something', 'anything', 'nothing', 'everything',
    'someone', 'anyone', 'noone', 'everyone',
    'somewhere', 'anywhere', 'nowhere', 'everywhere',
    'good', 'better', 'best', 'great', 'nice', 'okay', 'fine',
    'right', 'wrong', 'bad', 'worse', 'worst',
    'lot', 'lots', 'many', 'several', 'various',
    'different', 'similar', 'another', 'next', 'last',
    'first', 'third', 'new', 'old',
    'big', 'small', 'large', 'little', 'long', 'short',
    'high', 'low', 'full', 'empty', 'whole', 'part',
    'real', 'true', 'false', 'actual', 'main', 'important',

    # Qualifiers and discourse markers
    'really', 'actually', 'basically', 'probably', 'definitely',
    'certainly', 'possibly', 'maybe', 'perhaps',
    'like', 'likely', 'unlikely',
    'almost', 'nearly', 'quite', 'rather', 'pretty',
    'still', 'already', 'yet', 'though', 'although',
    'however', 'therefore', 'thus', 'hence',
    'truly', 'simply', 'easily', 'quickly', 'slowly',
    'well', 'ever',
    'either', 'neither', 'whether',
    'because', 'since', 'while', 'until', 'unless',
    'except', 'besides', 'anyway', 'otherwise', 'instead',
    'meanwhile', 'furthermore', 'moreover', 'nevertheless',
    'nonetheless', 'accordingly', 'alternatively', 'specifically',
    'essentially', 'particularly', 'primarily', 'additionally',

    # Vault vocabulary
    'note', 'notes', 'page', 'pages', 'vault', 'link', 'links',
    'wikilink', 'wikilinks', 'markdown', 'frontmatter',
    'file', 'files', 'folder', 'folders', 'path', 'paths',
    'section', 'sections', 'heading', 'headings', 'template', 'templates',
    'todo', 'todos', 'task', 'tasks', 'pending', 'inbox', 'archive', 'draft',
])

# High-frequency nouns that pass the stopword filter but carry no
# entity signal; they seed co-occurrence false positives.
GENERIC_WORDS = frozenset([
    'message', 'messages',
    'file', 'files',
    'info', 'information',
    'item', 'items',
    'list', 'lists',
    'name', 'names',
    'type', 'types',
    'value', 'values',
    'result', 'results',
    'issue', 'issues',
    'problem', 'problems',
    'point', 'points',
    'example', 'examples',
    'case', 'cases',
    'object', 'objects',
    'option', 'options',
    'line', 'lines',
    'text', 'string', 'strings',
    'number', 'numbers',
    'size', 'length',
    'level', 'levels',
    'mode', 'modes',
])

WIKILINK_RE = re.compile(r"\[\[([^\]|]+)(?:\|[^\]]+)?\]\]")
_MARKDOWN_CHARS_RE = re.compile(r"[*_`#\[\]()]")
_WORD_RE = re.compile(r"\b[a-z]+\b")

_stemmer = PorterStemmer()


@lru_cache(maxsize=65536)
def stem(word: str) -> str:
    """Porter stem of a lowercase word."""
    word = word.lower()
    if len(word) < 3:
        return word
    return _stemmer.stem(word)


def tokenize(text: str, min_length: int = DEFAULT_MIN_TOKEN_LENGTH) -> List[str]:
    """
    Extract significant lowercase words from text.

    Wikilinks are unwrapped to their target, markdown punctuation is
    dropped, and words shorter than ``min_length`` or in the stopword
    list are skipped. Order and duplicates are preserved.
    """
    clean = WIKILINK_RE.sub(r"\1", text)
    clean = _MARKDOWN_CHARS_RE.sub(" ", clean).lower()
    return [
        word for word in _WORD_RE.findall(clean)
        if len(word) >= min_length and word not in STOPWORDS
    ]


def tokenize_and_stem(text: str, min_length: int = DEFAULT_MIN_TOKEN_LENGTH) -> Tuple[Set[str], Set[str]]:
    """Token set and stem set for ``text``."""
    tokens = set(tokenize(text, min_length))
    return tokens, {stem(t) for t in tokens}


def content_terms(text: str, min_word_length: int) -> Tuple[Set[str], Set[str]]:
    """
    Tokens and stems used to match content against entities.

    Applies the strictness minimum length and drops generic nouns.
    """
    tokens = {
        token for token in tokenize(text)
        if len(token) >= min_word_length and token not in GENERIC_WORDS
    }
    return tokens, {stem(t) for t in tokens}


def extract_linked_entities(content: str) -> Set[str]:
    """Lowercased targets of every ``[[wikilink]]`` in content."""
    return {match.group(1).strip().lower() for match in WIKILINK_RE.finditer(content)}


def is_stopword(word: str) -> bool:
    return word.lower() in STOPWORDS
