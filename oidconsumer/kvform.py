"""Key-Value form: the encoding of direct responses from an OpenID
provider and of the text that gets signed.

Each pair is written as C{key:value} followed by a newline.
"""
import logging

__all__ = ['seqToKV', 'kvToSeq', 'dictToKV', 'kvToDict', 'KVFormError']


class KVFormError(ValueError):
    pass


def _complainer(func_name, data, strict):
    def complain(msg):
        text = '%s warning: %s: %r' % (func_name, msg, data)
        if strict:
            raise KVFormError(text)
        logging.warning(text)
    return complain


def _text(value, what, complain):
    if isinstance(value, bytes):
        return value.decode('utf-8')
    if not isinstance(value, str):
        complain('Converting %s to string: %r' % (what, value))
        return str(value)
    return value


def seqToKV(seq, strict=False):
    """Encode (key, value) pairs in KV form, keeping their order.

    Newlines, and colons in keys, can't be encoded and always raise
    KVFormError. Non-string values and surrounding whitespace are only
    logged unless C{strict} is set.

    @type seq: [(str, str)]
    @rtype: str
    """
    complain = _complainer('seqToKV', seq, strict)
    lines = []
    for key, value in seq:
        key = _text(key, 'key', complain)
        value = _text(value, 'value', complain)
        if '\n' in key or ':' in key:
            raise KVFormError(
                'Invalid input for seqToKV: bad character in key %r' % (key,))
        if '\n' in value:
            raise KVFormError(
                'Invalid input for seqToKV: newline in value %r' % (value,))
        if key.strip() != key:
            complain('Key has whitespace at beginning or end: %r' % (key,))
        if value.strip() != value:
            complain('Value has whitespace at beginning or end: %r' % (value,))
        lines.append('%s:%s\n' % (key, value))
    return ''.join(lines)


def kvToSeq(data, strict=False):
    """Decode KV form into (key, value) pairs.

    Blank lines are skipped. Lines without a colon are dropped and
    whitespace around keys and values is stripped, each with a warning,
    or KVFormError when C{strict}.

    @type data: str or bytes
    @rtype: [(str, str)]
    """
    complain = _complainer('kvToSeq', data, strict)
    if isinstance(data, bytes):
        data = data.decode('utf-8')

    lines = data.split('\n')
    if lines[-1]:
        complain('Does not end in a newline')
    else:
        lines.pop()

    pairs = []
    for num, line in enumerate(lines, 1):
        if not line.strip():
            continue
        key, colon, value = line.partition(':')
        if not colon:
            complain('Line %d does not contain a colon' % num)
            continue
        if not key.strip():
            complain('Line %d has an empty key' % num)
        elif key.strip() != key or value.strip() != value:
            complain('Line %d has whitespace around its key or value' % num)
        pairs.append((key.strip(), value.strip()))
    return pairs


def dictToKV(d):
    return seqToKV(sorted(d.items()))


def kvToDict(s):
    return dict(kvToSeq(s))
