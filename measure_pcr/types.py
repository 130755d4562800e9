import os
import sys

if sys.version_info < (3, 9):
    # 3.8 does not allow subscription; 3.9 requires it
    PathLike_str = os.PathLike
else:
    PathLike_str = os.PathLike[str]  # pylint: disable=unsubscriptable-object
