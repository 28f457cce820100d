import asyncio

from rowqueue.worker.worker_main import main

asyncio.run(main())
