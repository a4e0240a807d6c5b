#!/usr/bin/env python3
"""
netlog.py — Terminal viewer for network session logs
Requires: urwid  →  pip install urwid

Usage:    netlog <logfile>                page, search and filter a log
          netlog -f [-n 20] <logfile>     follow a growing log (rotation aware)
          cat file.log | netlog           highlight stdin and exit

Keys:
  ↑ ↓ / w s        scroll one line
  PgUp PgDn Space  scroll one page
  /                search (plain text, or regex after r)
  r                toggle regex / plain search
  n                next match
  f                filter (prefix with r: for regex)
  e                export visible lines
  c                clear filter + search
  q                quit

MAC colours and VLAN / disconnect-reason descriptions persist as JSON next
to this script (set NETLOG_HOME to keep them elsewhere). Edit
vlan_codes.json and reason_codes.json to give codes readable names.
"""

import urwid
import re
import os
import sys
import time
import json
import shutil
import argparse
import http.client
import urllib.parse
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import NamedTuple

# Palette
# (name, ANSI SGR, urwid fg, urwid bg). SGR drives stream / follow output,
# the urwid pair drives the interactive viewer.
LINE_STYLES = [
    ('ln',          '',         'default',            'default'),
    ('addr',        '1;34',     'light blue,bold',    'default'),
    ('alert',       '1;31',     'light red,bold',     'default'),
    ('join',        '1;32',     'light green,bold',   'default'),
    ('roam',        '1;36',     'light cyan,bold',    'default'),
    ('leave',       '1;33',     'yellow,bold',        'default'),
    ('ident',       '0;32',     'dark green',         'default'),
    ('field',       '0;36',     'dark cyan',          'default'),
    ('hm',          '1;30;43',  'black,bold',         'yellow'),
    # MAC colours, handed out in this order
    ('mac_red',     '1;31',     'light red,bold',     'default'),
    ('mac_yellow',  '1;33',     'yellow,bold',        'default'),
    ('mac_magenta', '1;35',     'light magenta,bold', 'default'),
    ('mac_cyan',    '1;36',     'light cyan,bold',    'default'),
    ('mac_white',   '0;37',     'light gray',         'default'),
    ('mac_brown',   '0;33',     'brown',              'default'),
    ('mac_teal',    '0;36',     'dark cyan',          'default'),
    ('mac_purple',  '0;35',     'dark magenta',       'default'),
]
MAC_PALETTE = [name for name, *_ in LINE_STYLES if name.startswith('mac_')]
_SGR        = {name: sgr for name, sgr, _fg, _bg in LINE_STYLES}

PALETTE = [
    # chrome
    ('header',   'white,bold',        'dark blue'),
    ('h_dim',    'light blue',        'dark blue'),
    ('footer',   'black',             'light gray'),
    ('fk',       'dark blue,bold',    'light gray'),
    ('ferr',     'dark red,bold',     'light gray'),
    ('fe_f',     'white,bold',        'dark blue'),
    ('sp_dim',   'dark gray',         'default'),
] + [(name, fg, bg) for name, _sgr, fg, bg in LINE_STYLES]


# Configuration
COLOR_FILE          = 'mac_colors.json'
VLAN_FILE           = 'vlan_codes.json'
REASON_FILE         = 'reason_codes.json'
OUI_FILE            = 'oui.txt'
OUI_URL             = 'https://standards-oui.ieee.org/oui/oui.txt'

TAIL_POLL_SECS      = 0.2
RELOAD_SECS         = 30.0
FOLLOW_MAX_LINES    = 10_000
DEFAULT_TAIL_LINES  = 10
FILTER_REGEX_PREFIX = 'r:'
UNKNOWN_VENDOR      = 'Unknown'

USAGE = 'Usage: netlog [-f] [-n COUNT] <logfile>\nOr:    cat file.log | netlog\n'


def state_home() -> Path:
    # Durable files live next to the program unless NETLOG_HOME says otherwise.
    env = os.environ.get('NETLOG_HOME')
    return Path(env) if env else Path(__file__).resolve().parent


def _warn(msg: str) -> None:
    print(f'[netlog warn] {msg}', file=sys.stderr)


# Patterns
_RE_MAC    = re.compile(r'(?:[0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}')
_RE_IPV4   = re.compile(r'\b(?:\d{1,3}\.){3}\d{1,3}\b')
_RE_FAIL   = re.compile(r'\w*fail\w*', re.IGNORECASE)
_RE_STATUS = [
    (style, re.compile(r'\b(?:' + '|'.join(words) + r')\b'))
    for style, words in (
        ('join',  ('clientJoin', 'clientConnect', 'association')),
        ('roam',  ('clientRoam', 'roam')),
        ('leave', ('clientDisconnect', 'clientLeave', 'disassociation', 'deauth')),
    )
]
_RE_IDENT  = re.compile(r'\b(?:user(?:name)?|identity)="[^"]*"'
                        r'|[\w.+-]+@[\w-]+(?:\.[\w-]+)+')
_RE_VLAN   = re.compile(r'\b(vlan(?:Id)?)="(\d+)"')
_RE_REASON = re.compile(r'\b(reason(?:Code)?|disconnectReason)="(\d+)"')
_RE_NAMED  = re.compile(r'\b(?:apName|apLocation|location)="[^"]*"')

_RE_OUI    = re.compile(
    r'^([0-9A-F]{2})-?([0-9A-F]{2})-?([0-9A-F]{2})\s+\((?:hex|base 16)\)\s+(.+)$',
    re.IGNORECASE)


def mac_key(token: str) -> str:
    # 00:11:22:aa:bb:cc / 00-11-22-AA-BB-CC -> 001122AABBCC
    return token.replace(':', '').replace('-', '').upper()


# Token passes
def _hl(tokens: list, pattern: re.Pattern, style, base_only: bool = True) -> list:
    """
    Single highlight pass over a [(style, text), ...] token list.

    *style* is either a style name, or a callable taking the match and
    returning a (style, text) token when the matched text is rewritten.
    With base_only, text already styled by an earlier pass is left alone.
    """
    out = []
    for a, text in tokens:
        if base_only and a != 'ln':
            out.append((a, text))
            continue
        pos = 0
        for m in pattern.finditer(text):
            if m.start() > pos:
                out.append((a, text[pos:m.start()]))
            out.append(style(m) if callable(style) else (style, m.group(0)))
            pos = m.end()
        if pos < len(text):
            out.append((a, text[pos:]))
    return [(a, t) for a, t in out if t]


def _hl_span(tokens: list, start: int, end: int, style: str) -> list:
    # Overlay a style over character range [start, end) of the joined token text.
    out = []
    pos = 0
    for a, text in tokens:
        tstart = pos
        tend   = pos + len(text)
        if tend <= start or tstart >= end:
            out.append((a, text))
        else:
            if tstart < start:
                out.append((a, text[:start - tstart]))
            s = max(0, start - tstart)
            e = min(len(text), end - tstart)
            if s < e:
                out.append((style, text[s:e]))
            if tend > end:
                out.append((a, text[end - tstart:]))
        pos = tend
    return [(a, t) for a, t in out if t]


def to_ansi(tokens: list) -> str:
    # Unknown style names (hand-edited colour files) print unstyled.
    out = []
    for style, text in tokens:
        sgr = _SGR.get(style)
        out.append(f'\033[{sgr}m{text}\033[0m' if sgr else text)
    return ''.join(out)


# Vendor table
class VendorIndex:
    # Read-only OUI prefix (6 upper-case hex digits) -> vendor name.

    def __init__(self, table: dict | None = None):
        self._table = {k.upper(): v for k, v in (table or {}).items()}

    def __len__(self) -> int:
        return len(self._table)

    def lookup(self, prefix: str) -> str:
        return self._table.get(prefix.upper(), UNKNOWN_VENDOR)

    @classmethod
    def parse(cls, lines) -> 'VendorIndex':
        # Accepts both registry spellings:
        #   00-00-0C   (hex)        Cisco Systems, Inc
        #   00000C     (base 16)    Cisco Systems, Inc
        table = {}
        for line in lines:
            m = _RE_OUI.match(line.strip())
            if m:
                table[(m[1] + m[2] + m[3]).upper()] = m[4].strip()
        return cls(table)

    @classmethod
    def load(cls, path: Path, url: str = OUI_URL, fetch: bool = True) -> 'VendorIndex':
        path = Path(path)
        if not path.exists():
            if not fetch:
                return cls()
            print('OUI file not found. Downloading from IEEE...', file=sys.stderr)
            data = download_oui(path, url)
            if data is None:
                return cls()
            return cls.parse(data.decode('utf-8', errors='replace').splitlines())
        try:
            with open(path, encoding='utf-8', errors='replace') as fh:
                return cls.parse(fh)
        except OSError as exc:
            _warn(f'{path.name}: {exc}; vendor lookups disabled')
            return cls()


def download_oui(path: Path, url: str = OUI_URL, timeout: float = 30.0) -> bytes | None:
    # Fetch the IEEE registry and save it to *path*. Returns the raw bytes even
    # when the save fails; None (with a warning) when the fetch does.
    parts    = urllib.parse.urlsplit(url)
    conn_cls = (http.client.HTTPSConnection if parts.scheme == 'https'
                else http.client.HTTPConnection)
    conn = conn_cls(parts.netloc, timeout=timeout)
    try:
        conn.request('GET', parts.path or '/', headers={'User-Agent': 'netlog'})
        resp = conn.getresponse()
        if resp.status != 200:
            _warn(f'failed to download OUI file from {url}: HTTP {resp.status}')
            return None
        data = resp.read()
    except (OSError, http.client.HTTPException) as exc:
        _warn(f'failed to download OUI file from {url}: {exc}')
        return None
    finally:
        conn.close()
    try:
        Path(path).write_bytes(data)
    except OSError as exc:
        _warn(f'could not save {path}: {exc}; vendor table kept for this run only')
    return data


# Durable maps
def _read_json(path: Path):
    # Missing -> None. Unreadable or corrupt -> None plus a warning; never fatal.
    try:
        with open(path, encoding='utf-8') as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        _warn(f'{Path(path).name}: {exc} (ignored)')
        return None


def _write_json(path: Path, data) -> bool:
    # Write-then-rename so concurrent readers never see half a file.
    # Failures are swallowed; the next successful flush catches up.
    path = Path(path)
    tmp  = path.with_name(f'.{path.name}.{os.getpid()}.tmp')
    try:
        with open(tmp, 'w', encoding='utf-8') as fh:
            json.dump(data, fh, indent=4)
        os.replace(tmp, path)
        return True
    except OSError:
        try:   os.unlink(tmp)
        except OSError: pass
        return False


def _color_snapshot(data) -> tuple:
    # Sanitise a {"map": {...}, "index": n} document.
    if not isinstance(data, dict):
        return {}, 0
    raw     = data.get('map')
    mapping = {str(k): str(v) for k, v in raw.items()} if isinstance(raw, dict) else {}
    index   = data.get('index')
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        index = 0
    return mapping, index


class ColorAssigner:
    """
    Stable MAC key -> style assignment.

    Styles are drawn from a fixed palette in order, wrapping around; the
    cursor only ever grows. Once a key has a style it keeps it, across
    reloads and restarts.
    """

    def __init__(self, palette: list | None = None):
        self.palette = list(palette or MAC_PALETTE)
        self._map: dict = {}
        self._cursor    = 0
        self.dirty      = False

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, key) -> bool:
        return key in self._map

    @property
    def cursor(self) -> int:
        return self._cursor

    def get_or_assign(self, key: str) -> tuple:
        # Returns (style, inserted).
        style = self._map.get(key)
        if style is not None:
            return style, False
        style = self.palette[self._cursor % len(self.palette)]
        self._cursor  += 1
        self._map[key] = style
        self.dirty     = True
        return style, True

    def color_for(self, key: str) -> str:
        return self.get_or_assign(key)[0]

    def snapshot(self) -> dict:
        return {'map': dict(self._map), 'index': self._cursor}

    def restore(self, snapshot) -> None:
        self._map, self._cursor = _color_snapshot(snapshot)
        self.dirty = False

    def merge(self, snapshot) -> None:
        # Adopt keys another instance assigned; our own assignments stand.
        ext, index = _color_snapshot(snapshot)
        for key, style in ext.items():
            self._map.setdefault(key, style)
        self._cursor = max(self._cursor, index)


class CodeMap:
    # code -> description; lookups of unknown codes insert a default.

    def __init__(self, name: str, default_fmt: str):
        self.name        = name
        self.default_fmt = default_fmt
        self._map: dict  = {}
        self.dirty       = False

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, code) -> bool:
        return str(code) in self._map

    def get_or_insert(self, code) -> tuple:
        # Returns (description, inserted).
        code = str(code)
        desc = self._map.get(code)
        if desc is not None:
            return desc, False
        desc = self.default_fmt.format(code=code)
        self._map[code] = desc
        self.dirty      = True
        return desc, True

    def lookup(self, code) -> str:
        return self.get_or_insert(code)[0]

    def snapshot(self) -> dict:
        return dict(self._map)

    def restore(self, data) -> None:
        self._map  = ({str(k): str(v) for k, v in data.items()}
                      if isinstance(data, dict) else {})
        self.dirty = False

    def reload_merge(self, external) -> None:
        # External descriptions win; codes only we know about are kept.
        if not isinstance(external, dict):
            return
        for code, desc in external.items():
            self._map[str(code)] = str(desc)


# Highlighting
class Highlighter:
    """
    Turns one raw log line into [(style, text), ...] tokens.

    Passes run in a fixed order and each only scans text no earlier pass
    has styled, so e.g. a vendor name containing "fail" or an address
    inside a description is never re-highlighted:

      1. MAC addresses      -> per-device colour, "<mac> (<vendor>)"
      2. IPv4 addresses     -> addr
      3. words with "fail"  -> alert
      4. status keywords    -> join / roam / leave
      5. usernames, emails  -> ident
      6. vlanId / reason    -> field, with the code map description appended
      7. AP name / location -> field
      8. search hits        -> hm, over everything

    Newly seen MACs and codes are registered in the session maps as a side
    effect; after that, highlighting the same line again gives the same
    output.
    """

    def __init__(self, vendors: VendorIndex, colors: ColorAssigner,
                 vlans: CodeMap, reasons: CodeMap):
        self.vendors = vendors
        self.colors  = colors
        self.vlans   = vlans
        self.reasons = reasons

    def _mac(self, m: re.Match) -> tuple:
        key    = mac_key(m.group(0))
        vendor = self.vendors.lookup(key[:6])
        return self.colors.color_for(key), f'{m.group(0)} ({vendor})'

    @staticmethod
    def _coded(m: re.Match, codes: CodeMap) -> tuple:
        return 'field', f'{m[1]}="{m[2]}" ({codes.lookup(m[2])})'

    def markup(self, line: str, search: 'Query | None' = None) -> list:
        # new keys on a line are registered right-to-left
        for m in reversed(list(_RE_MAC.finditer(line))):
            self.colors.color_for(mac_key(m.group(0)))

        toks = _hl([('ln', line)], _RE_MAC, self._mac)
        toks = _hl(toks, _RE_IPV4, 'addr')
        toks = _hl(toks, _RE_FAIL, 'alert')
        for style, pat in _RE_STATUS:
            toks = _hl(toks, pat, style)
        toks = _hl(toks, _RE_IDENT, 'ident')
        toks = _hl(toks, _RE_VLAN,   lambda m: self._coded(m, self.vlans))
        toks = _hl(toks, _RE_REASON, lambda m: self._coded(m, self.reasons))
        toks = _hl(toks, _RE_NAMED, 'field')

        # Hits inside inserted "(vendor)" / "(VLAN n)" text are painted too, but
        # recompute() only tests raw lines, so `n` never stops on them.
        if search is not None and search.active:
            flat = ''.join(t for _, t in toks)
            for start, end in search.spans(flat):
                toks = _hl_span(toks, start, end, 'hm')
        return toks

    def ansi(self, line: str, search: 'Query | None' = None) -> str:
        return to_ansi(self.markup(line, search))


# Session state
class Session:
    """
    State that outlives a key press or poll tick: the MAC colour map, both
    code maps, the vendor table and the highlighter built on them. main()
    owns one and hands it to whichever mode runs.
    """

    def __init__(self, home: Path, vendors: VendorIndex | None = None):
        self.home         = Path(home)
        self.colors_path  = self.home / COLOR_FILE
        self.vlans_path   = self.home / VLAN_FILE
        self.reasons_path = self.home / REASON_FILE

        self.vendors = vendors if vendors is not None else VendorIndex()
        self.colors  = ColorAssigner()
        self.vlans   = CodeMap('vlan',   'VLAN {code}')
        self.reasons = CodeMap('reason', 'Reason code {code}')
        self.highlighter = Highlighter(self.vendors, self.colors,
                                       self.vlans, self.reasons)

    @classmethod
    def open(cls, home: Path, fetch_vendors: bool = True) -> 'Session':
        home    = Path(home)
        vendors = VendorIndex.load(home / OUI_FILE, fetch=fetch_vendors)
        session = cls(home, vendors)
        session.load()
        return session

    def _code_maps(self):
        return ((self.vlans, self.vlans_path), (self.reasons, self.reasons_path))

    def load(self) -> None:
        self.colors.restore(_read_json(self.colors_path))
        for codes, path in self._code_maps():
            if not path.exists():
                _write_json(path, {})
            codes.restore(_read_json(path))

    def reload(self) -> None:
        # Merge what other instances wrote, then write the union back out.
        ext = _read_json(self.colors_path)
        if ext is not None:
            self.colors.merge(ext)
        for codes, path in self._code_maps():
            ext = _read_json(path)
            if ext is not None:
                codes.reload_merge(ext)
        self.flush(force=True)

    def flush(self, force: bool = False) -> None:
        if force or self.colors.dirty:
            if _write_json(self.colors_path, self.colors.snapshot()):
                self.colors.dirty = False
        for codes, path in self._code_maps():
            if force or codes.dirty:
                if _write_json(path, codes.snapshot()):
                    codes.dirty = False


# Log Data
class LogLine(NamedTuple):
    lineno: int     # 1-based position in the input, stable under eviction
    text:   str


class LineStore:
    # Ordered, append-only. With a cap, the oldest lines are dropped first.

    def __init__(self, cap: int | None = None):
        self._lines: deque = deque(maxlen=cap)
        self._next         = 1

    def __len__(self) -> int:
        return len(self._lines)

    def __getitem__(self, idx: int) -> LogLine:
        return self._lines[idx]

    def __iter__(self):
        return iter(self._lines)

    @property
    def cap(self) -> int | None:
        return self._lines.maxlen

    def append(self, text: str) -> LogLine:
        line = LogLine(self._next, text)
        self._next += 1
        self._lines.append(line)
        return line

    def extend(self, texts) -> None:
        for text in texts:
            self.append(text)

    def texts(self) -> list:
        return [ln.text for ln in self._lines]


# Search / filter
class InvalidPattern(ValueError):
    def __init__(self, term: str, reason: str):
        super().__init__(f'invalid regex {term!r}: {reason}')
        self.term   = term
        self.reason = reason


class Query:
    """
    A search or filter term, compiled case-insensitively.

    Queries are never mutated; changing the search or filter means building
    a new one. Query.build raises InvalidPattern for a regex that does not
    compile, so a rejected candidate cannot clobber the previous query.
    An empty term gives the inactive query, which matches nothing and
    filters nothing.
    """

    __slots__ = ('term', 'regex', 'pattern')

    def __init__(self, term: str | None = None, regex: bool = False,
                 pattern: re.Pattern | None = None):
        self.term    = term
        self.regex   = regex
        self.pattern = pattern

    @classmethod
    def build(cls, term: str | None, regex: bool = False) -> 'Query':
        if not term:
            return cls(None, regex)
        try:
            pat = re.compile(term if regex else re.escape(term), re.IGNORECASE)
            pat.search('')
        except re.error as exc:
            raise InvalidPattern(term, str(exc)) from exc
        return cls(term, regex, pat)

    @classmethod
    def parse_filter(cls, text: str) -> 'Query':
        # "r:<pattern>" is a regex filter, anything else a substring.
        if text.startswith(FILTER_REGEX_PREFIX):
            return cls.build(text[len(FILTER_REGEX_PREFIX):], regex=True)
        return cls.build(text)

    @property
    def active(self) -> bool:
        return self.pattern is not None

    def test(self, line: str) -> bool:
        return self.pattern is not None and self.pattern.search(line) is not None

    def spans(self, text: str):
        if self.pattern is None:
            return
        for m in self.pattern.finditer(text):
            if m.end() > m.start():
                yield m.start(), m.end()

    def label(self) -> str:
        if not self.term:
            return ''
        return f'{FILTER_REGEX_PREFIX}{self.term}' if self.regex else self.term

    def __repr__(self) -> str:
        return f'Query({self.term!r}, regex={self.regex})'


def recompute(lines, filt: Query, search: Query) -> tuple:
    # Filter first, then collect search hits as positions into the filtered view.
    # Both test the raw line text, never the highlighter's annotations.
    view    = [ln for ln in lines if filt.test(ln.text)] if filt.active else list(lines)
    matches = ([i for i, ln in enumerate(view) if search.test(ln.text)]
               if search.active else [])
    return view, matches


# Viewport
class Viewport:
    # offset is kept within [0, max(0, total - height)] after every change.

    def __init__(self, height: int, total: int = 0):
        self.height = max(1, int(height))
        self.total  = max(0, int(total))
        self.offset = 0

    @property
    def max_offset(self) -> int:
        return max(0, self.total - self.height)

    def clamp(self) -> int:
        self.offset = max(0, min(self.offset, self.max_offset))
        return self.offset

    def window(self) -> tuple:
        return self.offset, min(self.offset + self.height, self.total)

    def line_up(self) -> int:
        self.offset -= 1
        return self.clamp()

    def line_down(self) -> int:
        self.offset += 1
        return self.clamp()

    def page_up(self) -> int:
        self.offset -= self.height
        return self.clamp()

    def page_down(self) -> int:
        self.offset += self.height
        return self.clamp()

    def jump_to(self, target: int) -> int:
        if not self.offset <= target < self.offset + self.height:
            self.offset = target
        return self.clamp()

    def resize(self, height: int) -> int:
        self.height = max(1, int(height))
        return self.clamp()

    def set_total(self, total: int) -> int:
        self.total = max(0, int(total))
        return self.clamp()

    def reset(self) -> int:
        self.offset = 0
        return self.clamp()


# Follow mode
def _print_line(text: str) -> None:
    sys.stdout.write(text + '\n')
    sys.stdout.flush()


class TailFollower:
    """
    Follow a growing log file, printing each line highlighted as soon as it
    is complete.

    seed() prints the last *tail_lines* lines and switches to following;
    each tick() then
      - treats a shrunken or replaced file as rotated and restarts at byte 0,
      - reads and emits every newly completed line (kept in a capped store),
      - every *reload_secs*, merges the durable maps written by other
        instances and writes the result back.
    run() loops tick() forever; stop it by ending the process.

    *clock* and *sleep* are injectable so tests can drive ticks directly.
    """

    def __init__(self, path, session: Session, emit=None, *,
                 tail_lines: int = DEFAULT_TAIL_LINES,
                 poll_secs: float = TAIL_POLL_SECS,
                 reload_secs: float = RELOAD_SECS,
                 max_lines: int = FOLLOW_MAX_LINES,
                 clock=time.monotonic, sleep=time.sleep):
        self.path        = Path(path)
        self.session     = session
        self.emit        = emit or _print_line
        self.tail_lines  = tail_lines
        self.poll_secs   = poll_secs
        self.reload_secs = reload_secs
        self.clock       = clock
        self.sleep       = sleep
        self.store       = LineStore(cap=max_lines)

        self.state       = 'seeding'
        self.offset      = 0
        self.last_reload = 0.0
        self._fh         = None
        self._ino        = None
        self._partial    = b''

    # File handle

    def _open(self) -> None:
        fh = open(self.path, 'rb')
        self._fh  = fh
        self._ino = os.fstat(fh.fileno()).st_ino

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def _rotate(self) -> None:
        self.close()
        self.offset   = 0
        self._partial = b''
        try:
            self._open()
        except OSError:
            self._ino = None     # retried on the next tick

    # Reading

    def _split(self, data: bytes) -> list:
        # Complete lines only; an unterminated tail waits for the next read.
        *complete, self._partial = (self._partial + data).split(b'\n')
        return [raw.rstrip(b'\r').decode('utf-8', errors='replace')
                for raw in complete]

    def _emit(self, text: str) -> None:
        self.emit(self.session.highlighter.ansi(text))

    def seed(self) -> list:
        # OSError propagates: an unreadable file at start is fatal to the caller.
        self._open()
        size  = os.fstat(self._fh.fileno()).st_size
        data  = self._fh.read(size)
        self.offset = self._fh.tell()
        lines = self._split(data)
        self.store.extend(lines)
        if self.tail_lines > 0:
            for text in lines[-self.tail_lines:]:
                self._emit(text)
        self.last_reload = self.clock()
        self.state       = 'following'
        return lines

    def _read_new(self) -> list:
        self._fh.seek(self.offset)
        data        = self._fh.read()
        self.offset = self._fh.tell()
        new = self._split(data)
        for text in new:
            self.store.append(text)
            self._emit(text)
        return new

    def tick(self) -> list:
        new = []
        try:
            st = os.stat(self.path)
        except OSError:
            st = None            # mid-rotation; wait for the file to reappear
        if st is not None:
            if self._fh is None or st.st_ino != self._ino or st.st_size < self.offset:
                self._rotate()
            if self._fh is not None and st.st_size > self.offset:
                new = self._read_new()

        now = self.clock()
        if now - self.last_reload >= self.reload_secs:
            self.session.reload()
            self.last_reload = now
        return new

    def run(self) -> None:
        if self.state == 'seeding':
            self.seed()
        while True:
            self.tick()
            self.sleep(self.poll_secs)


# Interactive navigation
class Navigator:
    """
    Key-driven state behind the interactive viewer: filter and search
    queries, the filtered view with its match positions, the viewport and
    the search / filter prompt. Knows nothing about urwid, so every key can
    be exercised directly.
    """

    PROMPTS = {
        'search': 'Search ({mode}): ',
        'filter': f'Filter (prefix with {FILTER_REGEX_PREFIX} for regex): ',
    }

    def __init__(self, store: LineStore, page_height: int,
                 export_dir: Path | None = None, now=datetime.now):
        self.store      = store
        self.filter     = Query()
        self.search     = Query()
        self.view: list    = []
        self.matches: list = []
        self.match_pos  = -1
        self.viewport   = Viewport(page_height)
        self.prompt: str | None = None
        self.message    = ''
        self.error      = False
        self.export_dir = export_dir
        self._now       = now

        self._keys = {
            'up':        self.viewport.line_up,
            'w':         self.viewport.line_up,
            'W':         self.viewport.line_up,
            'down':      self.viewport.line_down,
            's':         self.viewport.line_down,
            'S':         self.viewport.line_down,
            'page up':   self.viewport.page_up,
            'page down': self.viewport.page_down,
            ' ':         self.viewport.page_down,
            '/':         lambda: self._open_prompt('search'),
            'f':         lambda: self._open_prompt('filter'),
            'r':         self.toggle_regex,
            'n':         self.next_match,
            'e':         self.export,
            'c':         self.clear,
        }
        self.refresh_view()

    # Derived state

    def refresh_view(self) -> None:
        self.view, self.matches = recompute(self.store, self.filter, self.search)
        self.viewport.set_total(len(self.view))

    def visible(self) -> list:
        start, end = self.viewport.window()
        return self.view[start:end]

    def resize(self, page_height: int) -> None:
        self.viewport.resize(page_height)

    def _fail(self, exc: Exception) -> None:
        self.message = str(exc)
        self.error   = True

    # Dispatch

    def handle_key(self, key: str) -> bool:
        # One decoded key. False means quit; unknown keys are no-ops.
        self.message = ''
        self.error   = False
        if key in ('q', 'Q'):
            return False
        action = self._keys.get(key)
        if action is not None:
            action()
        return True

    # Prompts

    def _open_prompt(self, kind: str) -> None:
        self.prompt = kind

    def prompt_caption(self) -> str:
        if self.prompt is None:
            return ''
        mode = 'regex' if self.search.regex else 'plain text'
        return self.PROMPTS[self.prompt].format(mode=mode)

    def submit(self, text: str) -> None:
        kind, self.prompt = self.prompt, None
        if kind == 'search':
            self.set_search(text.strip())
        elif kind == 'filter':
            self.set_filter(text.strip())

    def cancel_prompt(self) -> None:
        self.prompt = None

    # Actions

    def set_search(self, term: str) -> bool:
        try:
            query = Query.build(term, self.search.regex)
        except InvalidPattern as exc:
            self._fail(exc)
            return False
        self.search = query
        self.refresh_view()
        self.match_pos = -1
        if self.matches:
            self.match_pos = 0
            self.viewport.jump_to(self.matches[0])
        return True

    def toggle_regex(self) -> bool:
        try:
            query = Query.build(self.search.term, not self.search.regex)
        except InvalidPattern as exc:
            self._fail(exc)
            return False
        self.search    = query
        self.match_pos = -1
        self.refresh_view()
        return True

    def next_match(self) -> None:
        if not self.matches:
            return
        self.match_pos = (self.match_pos + 1) % len(self.matches)
        self.viewport.jump_to(self.matches[self.match_pos])

    def set_filter(self, text: str) -> bool:
        try:
            query = Query.parse_filter(text)
        except InvalidPattern as exc:
            self._fail(exc)
            return False
        self.filter    = query
        self.match_pos = -1
        self.refresh_view()
        self.viewport.reset()
        return True

    def clear(self) -> None:
        self.filter    = Query()
        self.search    = Query()
        self.match_pos = -1
        self.refresh_view()
        self.viewport.reset()

    def export(self) -> Path | None:
        # Visible slice of the filtered view, one raw line per row.
        ts    = self._now().strftime('%Y%m%d_%H%M%S')
        fname = f'netlog_export_{ts}.txt'
        fpath = Path(self.export_dir or os.getcwd()) / fname
        try:
            with open(fpath, 'w', encoding='utf-8') as fh:
                fh.write('\n'.join(ln.text for ln in self.visible()))
        except OSError as exc:
            self.message = f'export failed: {exc}'
            self.error   = True
            return None
        self.message = f'exported -> {fname}'
        return fpath


# Widgets
class PromptEdit(urwid.Edit):
    # One-line search / filter prompt swapped into the footer. Submit and
    # cancel keys go back to ViewerApp.handle_input, which owns the Navigator.
    SUBMIT_KEYS = ('enter', 'esc')

    def open(self, caption: str) -> None:
        self.set_caption(caption)
        self.set_edit_text('')

    def keypress(self, size, key):
        if key in self.SUBMIT_KEYS:
            return key
        return super().keypress(size, key)


class LogPane(urwid.Widget):
    # Box widget painting the navigator's visible slice; its height is the page size.
    _sizing     = frozenset(['box'])
    _selectable = False

    def __init__(self, nav: Navigator, highlighter: Highlighter):
        super().__init__()
        self._nav = nav
        self._hl  = highlighter

    def refresh(self) -> None:
        self._invalidate()

    def render(self, size, focus=False):
        maxcol, maxrow = size
        self._nav.resize(maxrow)
        visible = self._nav.visible()
        if visible:
            markup = []
            for i, ln in enumerate(visible):
                if i:
                    markup.append('\n')
                markup.extend(self._hl.markup(ln.text, self._nav.search))
        else:
            markup = [('sp_dim', '  (no lines)')]
        text = urwid.Text(markup or '', wrap='clip')
        return urwid.Filler(text, valign='top').render(size, focus)


KEY_HELP = [
    ('fk', '  ↑↓/ws'), ('footer', ':line  '),
    ('fk', 'PgUp/PgDn/Space'),   ('footer', ':page  '),
    ('fk', '/'),                 ('footer', ':search  '),
    ('fk', 'r'),                 ('footer', ':regex  '),
    ('fk', 'n'),                 ('footer', ':next  '),
    ('fk', 'f'),                 ('footer', ':filter  '),
    ('fk', 'e'),                 ('footer', ':export  '),
    ('fk', 'c'),                 ('footer', ':clear  '),
    ('fk', 'q'),                 ('footer', ':quit'),
]


# Main Application
class ViewerApp:
    CHROME_ROWS = 3   # title + status + key help

    def __init__(self, session: Session, nav: Navigator, name: str = ''):
        self.session = session
        self.nav     = nav
        self.name    = name
        self.loop: urwid.MainLoop | None = None
        self._build_ui()
        self._refresh_title()
        self._refresh_status()

    def _build_ui(self):
        self.w_title  = urwid.Text('', wrap='clip')
        self.w_status = urwid.Text('', wrap='clip')
        self.w_keys   = urwid.AttrMap(urwid.Text(KEY_HELP, wrap='clip'), 'footer')
        self.w_edit   = PromptEdit(caption='')
        self.pane     = LogPane(self.nav, self.session.highlighter)

        self.w_footer = urwid.Pile([
            urwid.AttrMap(self.w_status, 'footer'),
            self.w_keys,
        ])
        self.frame = urwid.Frame(
            body       = self.pane,
            header     = urwid.AttrMap(self.w_title, 'header'),
            footer     = self.w_footer,
            focus_part = 'body',
        )

    # Refresh
    def _refresh_title(self):
        self.w_title.set_text([
            ('header', ' ◉  netlog  '),
            ('h_dim',  self.name),
            ('header', f'  {len(self.nav.store):,} lines'),
        ])

    def _refresh_status(self):
        nav        = self.nav
        start, end = nav.viewport.window()
        mode       = 'REGEX' if nav.search.regex else 'TEXT'
        parts = [('footer', f' [Search: {nav.search.term or "None"} ({mode})]')]
        if nav.filter.active:
            parts.append(('footer', f' | Filter: {nav.filter.label()}'))
        if nav.search.active:
            if nav.match_pos >= 0:
                parts.append(('footer', f' | match {nav.match_pos + 1}/{len(nav.matches)}'))
            else:
                parts.append(('footer', f' | {len(nav.matches)} matches'))
        first = start + 1 if end > start else 0
        parts.append(('footer', f' | Lines {first} - {end} / {len(nav.view)}'))
        if nav.message:
            parts.append(('ferr' if nav.error else 'fk', f'  {nav.message}'))
        self.w_status.set_text(parts)

    def refresh(self):
        # Re-render, then flush any map entries the render registered.
        screen = self.loop.screen if self.loop is not None else None
        if screen is not None:
            _cols, rows = screen.get_cols_rows()
            self.nav.resize(max(1, rows - self.CHROME_ROWS))
        self.pane.refresh()
        self._refresh_title()
        self._refresh_status()
        if screen is not None and screen.started:
            self.loop.draw_screen()
        self.session.flush()

    # Prompt
    def _open_prompt(self):
        self.w_edit.open(self.nav.prompt_caption())
        self.w_footer.contents[1] = (urwid.AttrMap(self.w_edit, 'fe_f'),
                                     self.w_footer.options())
        self.w_footer.focus_position = 1
        self.frame.focus_position    = 'footer'

    def _close_prompt(self):
        self.w_footer.contents[1] = (self.w_keys, self.w_footer.options())
        self.frame.focus_position = 'body'

    # Input
    def handle_input(self, key):
        if not isinstance(key, str):
            return
        if self.nav.prompt is not None:
            if key == 'enter':
                self.nav.submit(self.w_edit.get_edit_text())
            elif key == 'esc':
                self.nav.cancel_prompt()
            else:
                return
            self._close_prompt()
        elif not self.nav.handle_key(key):
            raise urwid.ExitMainLoop()
        elif self.nav.prompt is not None:
            self._open_prompt()
        self.refresh()

    def run(self) -> None:
        self.loop = urwid.MainLoop(
            self.frame,
            palette         = PALETTE,
            unhandled_input = self.handle_input,
            handle_mouse    = False,
        )
        self.refresh()
        try:
            self.loop.run()
        finally:
            self.session.flush()


# Modes
def run_stream(session: Session, lines, out) -> int:
    # Piped input: highlight every line, persist, done.
    hl = session.highlighter
    for raw in lines:
        out.write(hl.ansi(raw.rstrip('\r\n')) + '\n')
    out.flush()
    session.flush()
    return 0


def read_log(path: Path) -> list:
    with open(path, errors='replace') as fh:
        return [l.rstrip('\r\n') for l in fh]


def run_interactive(session: Session, path: Path, lines: list) -> int:
    store = LineStore()
    store.extend(lines)
    page  = max(1, shutil.get_terminal_size().lines - ViewerApp.CHROME_ROWS)
    ViewerApp(session, Navigator(store, page), os.path.basename(path)).run()
    return 0


def run_follow(session: Session, path: Path, tail_lines: int) -> int:
    follower = TailFollower(path, session, tail_lines=tail_lines)
    try:
        follower.seed()
    except OSError as exc:
        sys.exit(f'Error: cannot read {str(path)!r}: {exc.strerror or exc}')
    try:
        follower.run()
    except KeyboardInterrupt:
        pass
    finally:
        follower.close()
        session.flush()
    return 0


# Entry point
def _count(text: str) -> int:
    if not text.isdigit():
        raise argparse.ArgumentTypeError(f'expected a line count, got {text!r}')
    return int(text)


class _ArgParser(argparse.ArgumentParser):
    # Bad arguments are an unusable input configuration: exit 1, not 2.
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f'{self.prog}: error: {message}\n')


def build_parser() -> argparse.ArgumentParser:
    ap = _ArgParser(
        prog='netlog',
        description='netlog — Terminal viewer for network session logs',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__)
    ap.add_argument('-f', '--follow', action='store_true',
                    help='follow the file as it grows (rotation aware)')
    ap.add_argument('-n', '--lines', metavar='COUNT', type=_count,
                    default=DEFAULT_TAIL_LINES,
                    help=f'lines shown when follow starts (default {DEFAULT_TAIL_LINES})')
    ap.add_argument('logfile', nargs='?', help='log file to open')
    return ap


def main(argv=None) -> int:
    home = state_home()

    # Piped stdin wins over every option, malformed ones included.
    if not sys.stdin.isatty():
        if hasattr(sys.stdin, 'reconfigure'):
            sys.stdin.reconfigure(errors='replace')
        return run_stream(Session.open(home), sys.stdin, sys.stdout)

    args = build_parser().parse_args(argv)
    if not args.logfile:
        sys.stderr.write(USAGE)
        return 1

    path = Path(args.logfile)
    if args.follow:
        if not os.path.isfile(path):
            sys.exit(f'Error: {str(path)!r} not found.')
        return run_follow(Session.open(home), path, args.lines)

    try:
        lines = read_log(path)
    except OSError as exc:
        sys.exit(f'Error: cannot read {str(path)!r}: {exc.strerror or exc}')
    return run_interactive(Session.open(home), path, lines)


if __name__ == '__main__':
    sys.exit(main())
