from aws_lambda_powertools.utilities.typing import LambdaContext

from imgtransform.transform import index as transform
from imgtransform.typing import HttpApiEvent, HttpApiResult


def transform_lambda_handler(
    event: HttpApiEvent,
    _: LambdaContext,
) -> HttpApiResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = transform.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret['statusCode']))

  return ret
