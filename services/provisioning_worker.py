"""
Background provisioning worker

Paid orders are provisioned off the request path. The payment coordinator
enqueues order ids; worker tasks pull them and run the provisioner. A
periodic sweep re-enqueues every PAID order so requests that were deferred,
or whose worker died mid-claim, are picked up again.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from admin_alerts import send_error_alert
from models import OrderStatus
from services.registration_provisioner import ProvisioningOutcome, RegistrationProvisioner
from workflow_errors import OrderWorkflowError

logger = logging.getLogger(__name__)


class ProvisioningWorker:
    """asyncio queue of order ids waiting for provisioning"""

    def __init__(self, provisioner: RegistrationProvisioner, store, sweep_interval: int = 300,
                 concurrency: int = 2):
        self.provisioner = provisioner
        self.store = store
        self.sweep_interval = sweep_interval
        self.concurrency = max(1, concurrency)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[int] = set()
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self.stats: Dict[str, int] = {outcome.value: 0 for outcome in ProvisioningOutcome}
        self.stats['errors'] = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def enqueue(self, order_id: int) -> bool:
        """Queue an order; False when it is already waiting"""
        if order_id in self._queued:
            return False
        self._queued.add(order_id)
        self._queue.put_nowait(order_id)
        logger.debug(f"📥 Order #{order_id} queued for provisioning")
        return True

    async def recover(self) -> int:
        """Re-enqueue every paid order that has not finished provisioning"""
        orders = await self.store.list_orders(status=OrderStatus.PAID)
        queued = sum(1 for order in orders if self.enqueue(order.id))
        if queued:
            logger.info(f"🔄 Provisioning sweep re-queued {queued} paid order(s)")
        return queued

    async def start(self):
        if self.running:
            return
        logger.info(f"🚀 Starting provisioning worker ({self.concurrency} task(s))")
        self._shutdown_event.clear()
        await self.recover()
        for index in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._worker_loop(index)))
        self._tasks.append(asyncio.create_task(self._sweep_loop()))

    async def stop(self):
        logger.info("🛑 Stopping provisioning worker...")
        self._shutdown_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("✅ Provisioning worker stopped")

    async def drain(self):
        """Wait until everything queued has been processed, inline when not started"""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            order_id = self._queue.get_nowait()
            try:
                await self._process(order_id)
            finally:
                self._queue.task_done()

    async def _process(self, order_id: int) -> Optional[ProvisioningOutcome]:
        self._queued.discard(order_id)
        try:
            outcome = await self.provisioner.provision(order_id)
        except OrderWorkflowError as e:
            self.stats['errors'] += 1
            logger.warning(f"⚠️ Provisioning order #{order_id} skipped: {e.reason}")
            return None
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Provisioning order #{order_id} crashed: {e}")
            await send_error_alert("ProvisioningWorker", f"Provisioning order #{order_id} crashed: {e}",
                                   "domain_registration", {'order_id': order_id})
            return None

        self.stats[outcome.value] += 1
        logger.info(f"📦 Order #{order_id} provisioning outcome: {outcome.value}")
        return outcome

    async def _worker_loop(self, index: int):
        logger.info(f"🔄 Provisioning worker task {index} started")
        while not self._shutdown_event.is_set():
            try:
                order_id = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self._process(order_id)
            finally:
                self._queue.task_done()

    async def _sweep_loop(self):
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.recover()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"❌ Provisioning sweep error: {e}")
