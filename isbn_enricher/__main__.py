from isbn_enricher.cli import main

raise SystemExit(main())
