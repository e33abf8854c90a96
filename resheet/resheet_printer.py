"""
A pretty-printer for cell values.
"""
import collections.abc

from resheet.resheet_datatypes import Pending, Environment


class Printer:
    """Formats cell values into short, readable strings for a terminal."""

    def __init__(self, indent_width=2, max_items=20):
        self._indent_char = " " * indent_width
        self.max_items = max_items
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        # Fast path for singletons
        if obj is Pending: return self._pformat_pending

        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, BaseException): return self._pformat_error
        if isinstance(obj, Environment): return self._pformat_environment
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_primitive,
            type(None): self._pformat_none,
            dict: self._pformat_dict,
            list: self._pformat_list,
            tuple: self._pformat_list,
        }

    def _pformat_primitive(self, obj, level):
        return repr(obj)

    def _pformat_str(self, obj, level):
        return repr(obj)

    def _pformat_none(self, obj, level):
        return 'None'

    def _pformat_pending(self, obj, level):
        return '<pending>'

    def _pformat_error(self, obj, level):
        message = str(obj)
        head = f"{type(obj).__name__}: {message}" if message else type(obj).__name__
        frame = getattr(obj, 'frame', None)
        if frame:
            return f"{head}\n{frame}"
        return head

    def _pformat_environment(self, obj, level):
        return f"<environment {', '.join(obj.keys())}>"

    def _elided(self, items):
        items = list(items)
        if len(items) > self.max_items:
            return items[:self.max_items], len(items) - self.max_items
        return items, 0

    def _pformat_list(self, obj, level):
        open_char, close_char = ('(', ')') if isinstance(obj, tuple) else ('[', ']')
        if not obj:
            return f"{open_char}{close_char}"
        shown, rest = self._elided(obj)
        parts = [self.pformat(item, level + 1) for item in shown]
        if rest:
            parts.append(f"... {rest} more")
        flat = f"{open_char}{', '.join(parts)}{close_char}"
        if isinstance(obj, tuple) and len(obj) == 1:
            flat = f"({parts[0]},)"
        if '\n' not in flat and len(flat) <= 80:
            return flat
        return self._pformat_block(parts, level, open_char, close_char)

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{}"
        shown, rest = self._elided(obj.keys())
        parts = [f"{self.pformat(key, level + 1)}: {self.pformat(obj[key], level + 1)}" for key in shown]
        if rest:
            parts.append(f"... {rest} more")
        flat = "{" + ', '.join(parts) + "}"
        if '\n' not in flat and len(flat) <= 80:
            return flat
        return self._pformat_block(parts, level, '{', '}')

    def _pformat_block(self, parts, level, open_char, close_char):
        outer_indent = self._indent_char * level
        inner_indent = self._indent_char * (level + 1)
        lines = [open_char]
        for part in parts:
            # Nested blocks are already indented for their own level
            lines.append(f"{inner_indent}{part},")
        lines.append(f"{outer_indent}{close_char}")
        return "\n".join(lines)
