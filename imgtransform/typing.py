from typing import Literal, NewType, NotRequired, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)


class Http(TypedDict):
  method: Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH', 'CONNECT']
  path: HttpPath
  protocol: NotRequired[str]
  sourceIp: NotRequired[str]
  userAgent: NotRequired[str]


class RequestContext(TypedDict):
  http: Http
  requestId: NotRequired[str]
  stage: NotRequired[str]
  timeEpoch: NotRequired[int]


class HttpApiEvent(TypedDict):
  version: NotRequired[str]
  routeKey: NotRequired[str]
  rawPath: NotRequired[str]
  rawQueryString: NotRequired[str]
  headers: dict[str, str]
  requestContext: RequestContext
  isBase64Encoded: NotRequired[bool]


class HttpApiResult(TypedDict):
  statusCode: int
  body: str
  isBase64Encoded: NotRequired[bool]
  headers: NotRequired[dict[str, str]]
