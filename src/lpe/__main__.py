from lpe.cli import main

raise SystemExit(main())
