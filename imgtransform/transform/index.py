import base64
import dataclasses
import datetime
import logging
import os
import sys
import time
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Mapping, Optional, Tuple

import boto3
from botocore.exceptions import ClientError
from mypy_boto3_s3.client import S3Client
from pythonjsonlogger.jsonlogger import JsonFormatter
from pyvips import GValue, Image  # type: ignore

import imgtransform
from imgtransform.typing import HttpApiEvent, HttpApiResult, HttpPath, S3Key

SECRET_HEADER = 'x-origin-secret-header'
CACHE_CONTROL_METADATA = 'cache-control'

# Catalog images always render something, even when the original is gone.
PLACEHOLDER_PATH_MARKER = 'product/'
PLACEHOLDER_CONTENT_TYPE = 'image/gif'

DEFAULT_CACHE_CONTROL = 'max-age=31622400'
DEFAULT_MAX_IMAGE_SIZE = 6 * 1024 * 1024
DEFAULT_PLACEHOLDER_KEY = 'odak-msc/no-img.gif'

DEFAULT_QUALITY = 100
RESIZE_KERNEL = 'cubic'
JPEG_SHRINK_FACTORS = [8, 4, 2]

JPEG_LOADER = 'jpegload_buffer'
MULTIPAGE_LOADERS = [
    'gifload_buffer',
    'webpload_buffer',
    'heifload_buffer',
    'tiffload_buffer',
]

OperationSet = dict[str, Optional[str]]


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgtransform.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)
  logging.getLogger('pyvips').setLevel(logging.WARNING)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


class RequestError(Exception):
  status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR


class BadRequest(RequestError):
  status = HTTPStatus.BAD_REQUEST


class InvalidOperation(BadRequest):
  pass


class Unauthorized(RequestError):
  status = HTTPStatus.FORBIDDEN


class RetrievalError(RequestError):
  pass


class TransformError(RequestError):
  pass


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


class OutputFormat(Enum):
  JPEG = 'jpeg'
  PNG = 'png'
  WEBP = 'webp'
  GIF = 'gif'
  AVIF = 'avif'

  @classmethod
  def from_operation(cls, value: str) -> 'OutputFormat':
    try:
      return cls(value)
    except ValueError:
      return cls.JPEG

  @classmethod
  def maybe_from_loader(cls, loader: str) -> Optional['OutputFormat']:
    match loader:
      case 'jpegload_buffer':
        return cls.JPEG
      case 'pngload_buffer':
        return cls.PNG
      case 'webpload_buffer':
        return cls.WEBP
      case 'gifload_buffer':
        return cls.GIF
      case 'heifload_buffer':
        return cls.AVIF
      case _:
        return None

  @property
  def content_type(self) -> str:
    return f'image/{self.value}'

  @property
  def lossy(self) -> bool:
    return self in [OutputFormat.JPEG, OutputFormat.WEBP, OutputFormat.AVIF]

  @property
  def multipage(self) -> bool:
    return self in [OutputFormat.GIF, OutputFormat.WEBP]

  def extension(self) -> str:
    if self == OutputFormat.JPEG:
      return '.jpg'
    return f'.{self.value}'


def parse_operations(operations_raw: str) -> OperationSet:
  """Split ``key=value,key=value`` into a mapping.

  Nothing is validated here. A fragment without ``=`` is kept with a ``None``
  value so bare flags such as ``original`` survive.
  """
  ops: OperationSet = {}
  for fragment in operations_raw.split(','):
    key, sep, value = fragment.partition('=')
    ops[key] = value if sep else None
  return ops


def get_operation(ops: Mapping[str, Optional[str]], name: str) -> Optional[str]:
  value = ops.get(name)
  if value is None or value == '':
    return None
  return value


def get_int_operation(ops: Mapping[str, Optional[str]], name: str) -> Optional[int]:
  value = get_operation(ops, name)
  if value is None:
    return None
  try:
    return int(value)
  except ValueError:
    raise InvalidOperation(f'invalid "{name}": {value}')


def get_dimension_operation(ops: Mapping[str, Optional[str]], name: str) -> Optional[int]:
  value = get_int_operation(ops, name)
  if value is not None and value <= 0:
    raise InvalidOperation(f'invalid "{name}": {value}')
  return value


@dataclasses.dataclass(eq=True, frozen=True)
class Operations:
  format: Optional[OutputFormat] = None
  quality: Optional[int] = None
  width: Optional[int] = None
  height: Optional[int] = None
  original: bool = False
  placeholder_suppressed: bool = False

  @classmethod
  def from_set(cls, ops: Mapping[str, Optional[str]]) -> 'Operations':
    fmt = get_operation(ops, 'format')
    output_format = None if fmt is None else OutputFormat.from_operation(fmt)

    # Quality is only honoured together with an explicit lossy format.
    if output_format is not None and output_format.lossy:
      quality = get_int_operation(ops, 'quality')
    else:
      quality = None

    return cls(
        format=output_format,
        quality=quality,
        width=get_dimension_operation(ops, 'width'),
        height=get_dimension_operation(ops, 'height'),
        original='original' in ops,
        placeholder_suppressed='p' in ops)

  def encode_param(self, source: OutputFormat) -> Tuple[OutputFormat, dict[str, Any]]:
    if self.format is None:
      output = source
    else:
      output = self.format

    if not output.lossy:
      return output, {}

    if self.quality is not None:
      return output, {'Q': self.quality}

    return output, {'Q': DEFAULT_QUALITY}


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))

  def transpose(self) -> 'Size':
    return Size(self.height, self.width)


@dataclasses.dataclass(eq=True, frozen=True)
class ResizeDirective:
  width: Optional[int]
  height: Optional[int]
  kernel: str = RESIZE_KERNEL
  fast_shrink_on_load: bool = True

  @classmethod
  def maybe_from_operations(cls, operations: Operations) -> Optional['ResizeDirective']:
    if operations.width is None and operations.height is None:
      return None
    return cls(operations.width, operations.height)

  def scale_for(self, original: Size) -> Tuple[float, float]:
    match (self.width, self.height):
      case (int() as width, None):
        scale = width / original.width
        return (scale, scale)
      case (None, int() as height):
        scale = height / original.height
        return (scale, scale)
      case (int() as width, int() as height):
        # Cover: fill the whole target, the overflow is cropped afterwards.
        scale = max(width / original.width, height / original.height)
        return (scale, scale)
      case _:
        raise Exception('system error')

  def shrink_on_load(self, original: Size) -> int:
    if not self.fast_shrink_on_load:
      return 1

    scale, _ = self.scale_for(original)
    for factor in JPEG_SHRINK_FACTORS:
      if factor * scale <= 1:
        return factor
    return 1

  def apply_to_frame(self, image: Image) -> Image:
    original = Size.from_image(image)
    hscale, vscale = self.scale_for(original)
    image = image.resize(hscale, vscale=vscale, kernel=self.kernel)

    if self.width is None or self.height is None:
      return image

    resized = Size.from_image(image)
    width = min(self.width, resized.width)
    height = min(self.height, resized.height)
    left = (resized.width - width) // 2
    top = (resized.height - height) // 2
    return image.extract_area(left, top, width, height)

  def apply(self, image: Image) -> Image:
    return join_pages([self.apply_to_frame(page) for page in split_pages(image)])


def split_pages(image: Image) -> list[Image]:
  page_height = image.get_page_height()
  n_pages = image.get('height') // page_height
  if n_pages <= 1:
    return [image]

  return [
      image.extract_area(0, i * page_height, image.get('width'), page_height)
      for i in range(n_pages)
  ]


def join_pages(pages: list[Image]) -> Image:
  if len(pages) == 1:
    return pages[0]

  joined = Image.arrayjoin(pages, across=1).copy()
  joined.set_type(GValue.gint_type, 'page-height', pages[0].get('height'))
  return joined


def get_orientation(image: Image) -> int:
  if image.get_typeof('orientation') == 0:
    return 1
  return image.get('orientation')


def autorot_pages(image: Image) -> Image:
  # Rotating the whole strip would transpose the frame layout.
  return join_pages([page.autorot() for page in split_pages(image)])


def render_image(body: bytes, operations: Operations, animated: bool) -> Tuple[bytes, str]:
  """Decode ``body``, apply format/resize/rotate and encode the result.

  Returns the encoded bytes and their content type.
  """
  image = Image.new_from_buffer(body, '', fail_on='none')
  loader = image.get('vips-loader')

  source_format = OutputFormat.maybe_from_loader(loader) or OutputFormat.PNG
  output_format, save_options = operations.encode_param(source_format)
  directive = ResizeDirective.maybe_from_operations(operations)
  orientation = get_orientation(image)

  # Single-frame outputs keep the first frame only.
  if animated and loader in MULTIPAGE_LOADERS and output_format.multipage:
    image = Image.new_from_buffer(body, '', fail_on='none', n=-1)
  elif directive is not None and loader == JPEG_LOADER:
    displayed = Size.from_image(image)
    # EXIF orientations 5-8 swap width and height once rotated.
    if 5 <= orientation <= 8:
      displayed = displayed.transpose()
    shrink = directive.shrink_on_load(displayed)
    if 1 < shrink:
      image = Image.new_from_buffer(body, '', fail_on='none', shrink=shrink)

  # Orientation is fixed on decoded pixels so width/height refer to what is displayed.
  if orientation != 1:
    image = autorot_pages(image)

  if directive is not None:
    image = directive.apply(image)

  encoded: bytes = image.write_to_buffer(output_format.extension(), **save_options)
  return encoded, output_format.content_type


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  original_bucket: str
  transformed_bucket: str = ''
  cache_control: str = DEFAULT_CACHE_CONTROL
  max_image_size: int = DEFAULT_MAX_IMAGE_SIZE
  placeholder_key: str = DEFAULT_PLACEHOLDER_KEY
  secret_key: str = ''
  route_prefix: str = ''
  animated: bool = False
  log_timing: bool = False
  region: Optional[str] = None

  @classmethod
  def from_env(cls, env: Mapping[str, str]) -> 'Config':
    return cls(
        original_bucket=env['originalImageBucketName'],
        transformed_bucket=env.get('transformedImageBucketName', ''),
        cache_control=env.get('transformedImageCacheTTL', DEFAULT_CACHE_CONTROL),
        max_image_size=int(env.get('maxImageSize', str(DEFAULT_MAX_IMAGE_SIZE))),
        placeholder_key=env.get('placeholderImageKey', DEFAULT_PLACEHOLDER_KEY),
        secret_key=env.get('secretKey', ''),
        route_prefix=env.get('routePrefix', ''),
        animated=env.get('animated', 'false') == 'true',
        log_timing=env.get('logTiming', 'false') == 'true',
        region=env.get('AWS_REGION'))


@dataclasses.dataclass(eq=True, frozen=True)
class ImageRequest:
  original_path: S3Key
  operations_raw: str

  @classmethod
  def from_path(cls, path: HttpPath) -> 'ImageRequest':
    # e.g. /images/rio/1.jpeg/format=webp,width=100
    original_path, sep, operations_raw = path.removeprefix('/').rpartition('/')
    if sep == '' or original_path == '' or operations_raw == '':
      raise BadRequest(f'invalid path: {path}')
    return cls(S3Key(original_path), operations_raw)

  @property
  def cache_key(self) -> S3Key:
    # Not normalized: operation order as written by the caller is part of the key.
    return S3Key(f'{self.original_path}/{self.operations_raw}')


@dataclasses.dataclass(frozen=True)
class ImageAsset:
  body: bytes
  content_type: str
  exists: bool


@dataclasses.dataclass(frozen=True)
class TransformedResult:
  body: bytes
  content_type: str
  too_large: bool


@dataclasses.dataclass(frozen=True)
class Timing:
  download_ms: int
  transform_ms: int
  upload_ms: int


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  b64_body: Optional[str]
  cache_control: Optional[str]
  content_type: Optional[str]
  img_size: Optional[int] = None
  timing: Optional[Timing] = None
  message: Optional[str] = None

  @classmethod
  def from_body(
      cls,
      body: bytes,
      content_type: str,
      cache_control: str,
      timing: Optional[Timing] = None,
  ) -> 'InstantResponse':
    return cls(
        status=HTTPStatus.OK,
        b64_body=base64.b64encode(body).decode(),
        cache_control=cache_control,
        content_type=content_type,
        img_size=len(body),
        timing=timing)

  @classmethod
  def from_error(cls, e: RequestError) -> 'InstantResponse':
    return cls(
        status=e.status, b64_body=None, cache_control=None, content_type=None, message=str(e))


def elapsed_ms(start_ns: int) -> int:
  return (time.time_ns() - start_ns) // 1000000


class ImgServer:
  clients: dict[Optional[str], S3Client] = {}

  def __init__(self, log: logging.Logger, s3: S3Client, config: Config):
    self.log = log
    self.s3 = s3
    self.config = config
    self.log_context = {'path': '', 'operations': ''}

  @classmethod
  def from_env(cls, log: Logger, env: Mapping[str, str]) -> Optional['ImgServer']:
    try:
      config = Config.from_env(env)
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None

    # Only the connection pool outlives an invocation.
    if config.region not in cls.clients:
      cls.clients[config.region] = boto3.client('s3', region_name=config.region)

    return cls(log=log, s3=cls.clients[config.region], config=config)

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_info(self, message: str, dict: dict[str, Any]) -> None:
    self.log.info({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, req: ImageRequest) -> None:
    self.log_context = {'path': str(req.original_path), 'operations': req.operations_raw}

  def authorize(self, headers: Mapping[str, str]) -> None:
    if self.config.secret_key == '':
      return
    if headers.get(SECRET_HEADER) != self.config.secret_key:
      raise Unauthorized('Request unauthorized')

  def strip_route_prefix(self, path: HttpPath) -> HttpPath:
    prefix = self.config.route_prefix
    if prefix == '':
      return path
    if not path.startswith(prefix):
      self.log_error('path without route prefix passed', {'route_prefix': prefix, 'uri': path})
      return path
    return HttpPath(path[len(prefix):])

  def lookup_cache(self, req: ImageRequest) -> Optional[ImageAsset]:
    if self.config.transformed_bucket == '':
      return None

    try:
      res = self.s3.get_object(Bucket=self.config.transformed_bucket, Key=req.cache_key)
      return ImageAsset(
          body=res['Body'].read(),
          content_type=res.get('ContentType', 'application/octet-stream'),
          exists=True)
    except Exception as e:
      if isinstance(e, ClientError) and is_not_found_client_error(e):
        self.log_debug('transformed image not found', {'key': req.cache_key})
      else:
        self.log_warning(
            'failed to look up transformed image', {
                'reason': str(e),
                'key': req.cache_key
            })
      return None

  def load_source(self, req: ImageRequest) -> ImageAsset:
    try:
      res = self.s3.get_object(Bucket=self.config.original_bucket, Key=req.original_path)
      return ImageAsset(
          body=res['Body'].read(),
          content_type=res.get('ContentType', 'application/octet-stream'),
          exists=True)
    except Exception as e:
      self.log_warning('error downloading original image', {'reason': str(e)})
      if PLACEHOLDER_PATH_MARKER not in req.original_path:
        raise RetrievalError('error downloading original image') from e

    try:
      res = self.s3.get_object(
          Bucket=self.config.original_bucket, Key=self.config.placeholder_key)
      return ImageAsset(
          body=res['Body'].read(), content_type=PLACEHOLDER_CONTENT_TYPE, exists=False)
    except Exception as e:
      raise RetrievalError('error downloading placeholder image') from e

  def transform(self, asset: ImageAsset, ops: OperationSet) -> ImageAsset:
    # Placeholders are served as-is.
    if not asset.exists:
      return asset

    operations = Operations.from_set(ops)
    if operations.original:
      return asset

    try:
      body, content_type = render_image(asset.body, operations, self.config.animated)
    except Exception as e:
      raise TransformError('error transforming image') from e

    return ImageAsset(body=body, content_type=content_type, exists=True)

  def publish(self, req: ImageRequest, asset: ImageAsset) -> TransformedResult:
    result = TransformedResult(
        body=asset.body,
        content_type=asset.content_type,
        too_large=self.config.max_image_size < len(asset.body))

    if result.too_large:
      self.log_warning(
          'transformed image exceeds max size', {
              'img_size': len(result.body),
              'max_image_size': self.config.max_image_size,
          })

    if not asset.exists or self.config.transformed_bucket == '':
      return result

    try:
      self.s3.put_object(
          Body=result.body,
          Bucket=self.config.transformed_bucket,
          Key=req.cache_key,
          ContentType=result.content_type,
          Metadata={
              CACHE_CONTROL_METADATA: self.config.cache_control,
          })
    except Exception as e:
      self.log_error(
          'could not upload transformed image', {
              'reason': str(e),
              'key': req.cache_key
          })

    return result

  def transform_or_fetch(self, req: ImageRequest) -> InstantResponse:
    cached = self.lookup_cache(req)
    if cached is not None:
      return InstantResponse.from_body(cached.body, cached.content_type, self.config.cache_control)

    start_ns = time.time_ns()
    asset = self.load_source(req)
    ops = parse_operations(req.operations_raw)
    download_ms = elapsed_ms(start_ns)

    if 'p' in ops and not asset.exists:
      self.log_debug('original image not found and no placeholder', {})

    start_ns = time.time_ns()
    transformed = self.transform(asset, ops)
    transform_ms = elapsed_ms(start_ns)

    start_ns = time.time_ns()
    result = self.publish(req, transformed)
    upload_ms = elapsed_ms(start_ns)

    timing = Timing(download_ms=download_ms, transform_ms=transform_ms, upload_ms=upload_ms)
    if self.config.log_timing:
      self.log_info('perf', dataclasses.asdict(timing))

    return InstantResponse.from_body(
        result.body, result.content_type, self.config.cache_control, timing)

  def process(self, method: str, path: HttpPath, headers: Mapping[str, str]) -> InstantResponse:
    try:
      self.authorize(headers)

      if method != 'GET':
        raise BadRequest('Only GET method is supported')

      req = ImageRequest.from_path(self.strip_route_prefix(path))
      self.set_log_context(req)

      return self.transform_or_fetch(req)
    except BadRequest as e:
      self.log_warning('bad request', {'reason': str(e), 'uri': path})
      return InstantResponse.from_error(e)
    except RequestError as e:
      self.log_error(str(e), {'reason': str(e.__cause__ or e), 'uri': path})
      return InstantResponse.from_error(e)
    except Exception as e:
      self.log_error('error during process()', {'reason': str(e), 'uri': path})
      return InstantResponse.from_error(RequestError('internal server error'))


def to_result(res: InstantResponse) -> HttpApiResult:
  if res.b64_body is None:
    return {
        'statusCode': int(res.status),
        'body': res.message or '',
    }

  headers: dict[str, str] = {}
  if res.content_type is not None:
    headers['Content-Type'] = res.content_type
  if res.cache_control is not None:
    headers['Cache-Control'] = res.cache_control

  return {
      'statusCode': int(res.status),
      'body': res.b64_body,
      'isBase64Encoded': True,
      'headers': headers,
  }


def lambda_main(event: HttpApiEvent, env: Optional[Mapping[str, str]] = None) -> HttpApiResult:
  server = ImgServer.from_env(logger, os.environ if env is None else env)
  if server is None:
    return {
        'statusCode': int(HTTPStatus.INTERNAL_SERVER_ERROR),
        'body': 'server misconfigured',
    }

  # A malformed event leaves method/path empty and is rejected as a bad request.
  http = (event.get('requestContext') or {}).get('http') or {}
  method = http.get('method') or ''
  path = HttpPath(http.get('path') or '')
  headers = event.get('headers') or {}

  result = server.process(method, path, headers)

  server.log_debug(
      'responded', {
          'uri': path,
          'status': result.status,
          'cache_control': result.cache_control,
          'content_type': result.content_type,
          'img_size': result.img_size,
      })

  return to_result(result)
