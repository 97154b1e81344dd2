"""常量定义：HTTP 状态码、存储相关的固定取值。"""

from fastapi import status

HTTP_STATUS_OK = status.HTTP_200_OK
HTTP_STATUS_BAD_REQUEST = status.HTTP_400_BAD_REQUEST
HTTP_STATUS_PAYMENT_REQUIRED = status.HTTP_402_PAYMENT_REQUIRED
HTTP_STATUS_FORBIDDEN = status.HTTP_403_FORBIDDEN
HTTP_STATUS_NOT_FOUND = status.HTTP_404_NOT_FOUND
HTTP_STATUS_CONFLICT = status.HTTP_409_CONFLICT
HTTP_STATUS_PAYLOAD_TOO_LARGE = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
HTTP_STATUS_INTERNAL_ERROR = status.HTTP_500_INTERNAL_SERVER_ERROR
HTTP_STATUS_BAD_GATEWAY = status.HTTP_502_BAD_GATEWAY
HTTP_STATUS_GATEWAY_TIMEOUT = status.HTTP_504_GATEWAY_TIMEOUT

ACCESS_TOKEN_TYPE = "bearer"
ADMIN_ROLE = "admin"

# 桶策略中两个受管语句的 Sid
PUBLIC_READ_SID = "PublicRead"
DENY_ALL_SID = "DenyAllExceptOwner"
POLICY_VERSION = "2012-10-17"
POLICY_ACTION_GET_OBJECT = "s3:GetObject"

DIRECTORY_CONTENT_TYPE = "application/x-directory"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

MAX_NAME_LENGTH = 255
KB = 1024
