import sys

from storyflow.cli import main

sys.exit(main())
