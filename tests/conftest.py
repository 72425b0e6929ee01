import os
import sys

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, "src"))

# pagestream is imported from the source tree; an editable install is optional.
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
