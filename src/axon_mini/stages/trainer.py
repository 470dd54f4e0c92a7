"""训练阶段

按顺序提供训练流水线的各个步骤:
1. write_parameter_file - 写入超参数文件
2. handle_old_data - 清理上一次训练留下的数据
3. move_data_to_mount - 把数据集复制到挂载目录
4. extract_dataset - 用数据集镜像解压数据集
5. train_model - 运行训练容器直到结束
6. update_checkpoints - 同步检查点并返回最新的训练轮数
"""

import asyncio
import json
import logging
import os
import shutil
from typing import Optional, Set

from ..errors import NotFoundError, StageError
from ..models import Checkpoint
from .base import MODEL_MOUNT, StageExecutor

logger = logging.getLogger(__name__)

HYPERPARAMETER_FILE = "hyperparameters.json"
METRICS_FILE = "metrics.json"
CHECKPOINT_DIR = "checkpoints"
DATASET_DIR = "dataset"


class Trainer(StageExecutor):
    """训练阶段执行器"""

    async def write_parameter_file(self, project_id: str) -> str:
        project = await self.store.retrieve_by_id(project_id)
        hyperparameters = project.hyperparameters
        dataset_name = os.path.basename(project.dataset_path) if project.dataset_path else None
        path = os.path.join(self.train_dir(project), HYPERPARAMETER_FILE)
        self.write_json(path, {
            "epochs": hyperparameters.epochs,
            "batch-size": hyperparameters.batch_size,
            "eval-frequency": hyperparameters.eval_frequency,
            "percent-evaluated": hyperparameters.percent_evaluated,
            "checkpoint": hyperparameters.checkpoint,
            "dataset-path": f"{MODEL_MOUNT}/{DATASET_DIR}/{dataset_name}" if dataset_name else None,
        })
        logger.info(f"Wrote hyperparameters for project {project_id}")
        return path

    async def handle_old_data(self, project_id: str) -> None:
        """清理上一次训练的数据

        从默认检查点重新开始时，删除旧的检查点文件和指标，
        并丢弃没有被导出引用、也没有正在导出的检查点记录。
        被保留的检查点连同其model.ckpt-<step>.*文件一起保留，
        正在运行的导出容器仍然可以读取。
        从已有检查点继续训练时保留全部数据。
        """
        project = await self.store.retrieve_by_id(project_id)
        if project.hyperparameters.checkpoint != "default":
            logger.info(f"Project {project_id} continues from checkpoint {project.hyperparameters.checkpoint}")
            return

        stale = [
            step for step, checkpoint in project.checkpoints.items()
            if not checkpoint.export_ids and not checkpoint.exporting
        ]
        for step in stale:
            del project.checkpoints[step]
        await self.store.persist(project)
        if stale:
            logger.info(f"Dropped {len(stale)} stale checkpoints from project {project_id}")

        train_dir = self.train_dir(project)
        self._remove_checkpoint_files(os.path.join(train_dir, CHECKPOINT_DIR), set(project.checkpoints))
        metrics_path = os.path.join(train_dir, METRICS_FILE)
        if os.path.exists(metrics_path):
            os.remove(metrics_path)

    @staticmethod
    def _remove_checkpoint_files(checkpoint_dir: str, keep: Set[int]) -> None:
        """删除检查点目录中除keep之外的所有文件"""
        if not os.path.isdir(checkpoint_dir):
            return
        prefixes = tuple(f"model.ckpt-{step}." for step in keep)
        for entry in os.listdir(checkpoint_dir):
            if prefixes and entry.startswith(prefixes):
                continue
            path = os.path.join(checkpoint_dir, entry)
            if os.path.isdir(path):
                shutil.rmtree(path, ignore_errors=True)
            else:
                os.remove(path)

    async def move_data_to_mount(self, project_id: str) -> str:
        project = await self.store.retrieve_by_id(project_id)
        if not project.dataset_path:
            raise NotFoundError(f"project {project_id} has no dataset")
        if not os.path.isfile(project.dataset_path):
            raise NotFoundError(f"dataset {project.dataset_path} not found")

        dataset_dir = os.path.join(self.train_dir(project), DATASET_DIR)
        os.makedirs(dataset_dir, exist_ok=True)
        destination = os.path.join(dataset_dir, os.path.basename(project.dataset_path))
        await asyncio.to_thread(shutil.copyfile, project.dataset_path, destination)
        logger.info(f"Copied dataset for project {project_id} to {destination}")
        return destination

    async def extract_dataset(self, project_id: str) -> None:
        project = await self.store.retrieve_by_id(project_id)
        await self.run_to_completion(
            project_id, None, "dataset", {self.train_dir(project): MODEL_MOUNT}
        )

    async def train_model(self, project_id: str) -> None:
        """运行训练容器直到结束

        容器被外部终止时以非零状态退出，同样作为失败抛出。
        """
        project = await self.store.retrieve_by_id(project_id)
        await self.run_to_completion(
            project_id, "train", "train", {self.train_dir(project): MODEL_MOUNT},
            keep_handle=True
        )

    async def update_checkpoints(self, project_id: str) -> Optional[int]:
        """同步检查点

        运行指标镜像把训练日志整理成metrics.json，再据此补全项目的检查点记录。

        Returns:
            Optional[int]: 本次训练metrics.json中最新的训练轮数，没有检查点时为None。
            之前训练保留下来的检查点不参与计算
        """
        project = await self.store.retrieve_by_id(project_id)
        train_dir = self.train_dir(project)
        if not os.path.isdir(os.path.join(train_dir, CHECKPOINT_DIR)):
            return None

        await self.run_to_completion(project_id, None, "metrics", {train_dir: MODEL_MOUNT})

        metrics_path = os.path.join(train_dir, METRICS_FILE)
        if not os.path.exists(metrics_path):
            return None
        try:
            with open(metrics_path) as f:
                metrics = json.load(f)
        except json.JSONDecodeError as e:
            raise StageError(f"invalid metrics file for project {project_id}: {e}")

        project = await self.store.retrieve_by_id(project_id)
        added = 0
        for step, values in metrics.items():
            step = int(step)
            if step in project.checkpoints:
                project.checkpoints[step].metrics = values
            else:
                project.checkpoints[step] = Checkpoint(step=step, metrics=values)
                added += 1
        await self.store.persist(project)

        if added:
            logger.info(f"Found {added} new checkpoints for project {project_id}")
        return max(int(step) for step in metrics) if metrics else None
