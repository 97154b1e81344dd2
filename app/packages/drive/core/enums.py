"""枚举定义：约束文件节点类型与访问权限的可选值。"""

from enum import Enum


class FileKindEnum(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


class PermissionEnum(str, Enum):
    """对象的逻辑访问权限，对应桶策略中的 PublicRead 与 DenyAllExceptOwner。"""

    PUBLIC = "public"
    PRIVATE = "private"
