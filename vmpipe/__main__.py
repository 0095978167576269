from vmpipe.cli import main

raise SystemExit(main())
