import hashlib
import json
import re
import typing


def normalise_image_reference(image_reference: str):
  if not isinstance(image_reference, str):
    raise ValueError(image_reference)

  parts = image_reference.split('/')

  left_part = parts[0]
  # heuristically check if we have a (potentially) valid hostname (same rules as docker-cli)
  is_hostname = len(parts) > 1 and (
    '.' in left_part or ':' in left_part or left_part == 'localhost'
  )
  if not is_hostname:
    # insert 'library' if only image name was given
    if len(parts) == 1:
      parts.insert(0, 'library')

    # probably, the first part is not a hostname; inject default registry host
    parts.insert(0, 'registry-1.docker.io')

  # of course, docker.io gets special handling
  if parts[0] == 'docker.io':
      parts[0] = 'registry-1.docker.io'

  return '/'.join(parts)


def urljoin(*parts):
    if len(parts) == 1:
        return parts[0]
    first = parts[0]
    last = parts[-1]
    middle = parts[1:-1]

    first = first.rstrip('/')
    middle = list(map(lambda s: s.strip('/'), middle))
    last = last.lstrip('/')

    return '/'.join([first] + middle + [last])


def canonical_json(obj: dict) -> bytes:
    '''
    serialises the given object into the byte-representation used for calculating
    content-digests. Keys are sorted, so the result does not depend on dict-insertion-order.
    '''
    return json.dumps(
        obj=obj,
        separators=(',', ':'),
        sort_keys=True,
    ).encode('utf-8')


def sha256_digest(octets: bytes) -> str:
    return f'sha256:{hashlib.sha256(octets).hexdigest()}'


def digest_hex(digest: str) -> str:
    '''
    returns the hex-part of a digest in the form <algorithm>:<hex>
    '''
    algorithm, sep, hex_digest = digest.partition(':')
    if not sep or not algorithm or not hex_digest:
        raise ValueError(f'not a valid digest: {digest=}')
    return hex_digest


def sanitise_newlines(text: typing.Optional[str]) -> str:
    if not text:
        return ''
    return text.replace('\n', '\\n')


# https://github.com/distribution/reference/blob/main/regexp.go (simplified)
_name_component = r'[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*'
_domain = r'(?:[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*|\[[a-fA-F0-9:]+\])(?::[0-9]+)?'
_image_reference_pattern = re.compile(
    rf'^(?:{_domain}/)?{_name_component}(?:/{_name_component})*'
    r'(?::[\w][\w.-]{0,127})?'
    r'(?:@[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,})?$'
)


def validate_image_reference(image_reference: str):
    '''
    raises ValueError if the given image-reference is not well-formed
    '''
    if not isinstance(image_reference, str) or not image_reference:
        raise ValueError(f'not a valid image-reference: {image_reference!r}')

    if not _image_reference_pattern.match(image_reference):
        raise ValueError(f'not a valid image-reference: {image_reference!r}')
