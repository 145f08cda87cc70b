from mdtick.app import main

raise SystemExit(main())
