# Import all models so Base.metadata knows every table before create_all
from filevault.db.session import Base  # noqa: F401
from filevault.models.file import File  # noqa: F401
from filevault.models.file_version import FileVersion  # noqa: F401
from filevault.models.file_share import FileShare  # noqa: F401
