"""CLI命令"""
import asyncio
import logging

import click
from tabulate import tabulate

from ..config import config
from ..db import ProjectStore
from ..errors import OrchestratorError
from ..poller import CheckpointPoller
from ..runtime import DockerRuntime
from ..service import MLService
from ..settings import settings
from ..states import ReadinessState


def build_service() -> MLService:
    """按环境配置创建编排服务"""
    store = ProjectStore(settings.DATABASE_FILENAME, settings.WORKDIR)
    runtime = DockerRuntime(settings.DOCKER_BASE_URL)
    return MLService(runtime, store)


def _run(coro):
    """执行协程，把编排异常转换成CLI错误"""
    try:
        return asyncio.run(coro)
    except OrchestratorError as e:
        raise click.ClickException(str(e))


async def _boot(service: MLService) -> None:
    await service.boot()
    service.require_ready()


@click.group()
@click.option('--config', 'config_path', default=None, help='配置文件路径')
@click.pass_context
def cli(ctx, config_path):
    """机器学习训练编排工具"""
    config.load(config_path or settings.AXON_MINI_CONFIG)
    logging_config = config.get_logging_config()
    logging.basicConfig(
        level=settings.LOG_LEVEL or logging_config.get('level', 'INFO'),
        format=logging_config.get('format')
    )
    if ctx.obj is None:
        ctx.obj = build_service()


@cli.command()
@click.pass_obj
def boot(service):
    """探测容器运行时并拉取镜像"""
    state = _run(service.boot())
    if state == ReadinessState.NO_RUNTIME:
        raise click.ClickException("container runtime is not available")
    print(f"状态: {state.value}")


@cli.command()
@click.pass_obj
def projects(service):
    """列出所有项目及训练状态"""
    rows = []
    for row in _run(service.get_projects()):
        project, status = row['project'], row['status']
        rows.append([
            project.id,
            project.name,
            status.training_status.value,
            f"{status.current_epoch}/{status.last_epoch}"
        ])

    if rows:
        print(tabulate(rows, headers=['ID', '名称', '状态', '轮数'], tablefmt='grid'))
    else:
        print("没有找到任何项目")


@cli.command()
@click.argument('name')
@click.option('--dataset', type=click.Path(exists=True, dir_okay=False), help='数据集压缩包')
@click.option('--epochs', type=int, default=None, help='训练轮数')
@click.option('--batch-size', type=int, default=None, help='批大小')
@click.pass_obj
def create(service, name, dataset, epochs, batch_size):
    """创建项目"""
    hyperparameters = {}
    if epochs is not None:
        hyperparameters['epochs'] = epochs
    if batch_size is not None:
        hyperparameters['batch_size'] = batch_size
    project = _run(service.store.create_project(name, dataset, hyperparameters))
    print(f"已创建项目: {project.name} ({project.id})")


@cli.command('add-video')
@click.argument('project_id')
@click.argument('name')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def add_video(service, project_id, name, path):
    """为项目添加测试视频"""
    video = _run(service.store.add_video(project_id, name, path))
    print(f"已添加视频: {video.name} ({video.id})")


@cli.command()
@click.argument('project_id')
@click.pass_obj
def train(service, project_id):
    """训练项目，训练结束后返回"""

    async def _train():
        await _boot(service)
        poller = CheckpointPoller(service)
        poller.start()
        try:
            return await service.start(project_id)
        finally:
            await poller.stop()

    print(_run(_train()))


@cli.command()
@click.argument('project_id')
@click.argument('checkpoint', type=int)
@click.argument('name')
@click.pass_obj
def export(service, project_id, checkpoint, name):
    """把检查点导出为模型包"""

    async def _export():
        await _boot(service)
        return await service.export(project_id, checkpoint, name)

    print(_run(_export()))


@cli.command('test')
@click.argument('project_id')
@click.argument('export_id')
@click.argument('video_id')
@click.argument('name')
@click.pass_obj
def run_test(service, project_id, export_id, video_id, name):
    """在视频上测试导出的模型"""

    async def _test():
        await _boot(service)
        return await service.test(name, project_id, export_id, video_id)

    print(_run(_test()))


@cli.command()
@click.argument('project_id')
@click.pass_obj
def halt(service, project_id):
    """终止项目的训练容器"""
    _run(service.halt(project_id))
    print(f"已终止项目 {project_id} 的训练")


@cli.command()
@click.argument('project_id')
@click.pass_obj
def checkpoints(service, project_id):
    """列出项目的检查点"""
    rows = [
        [c.step, ', '.join(f"{k}={v:.4f}" for k, v in c.metrics.items()), len(c.export_ids),
         '是' if c.exporting else '否']
        for c in _run(service.get_checkpoints(project_id))
    ]
    if rows:
        print(tabulate(rows, headers=['轮数', '指标', '导出数', '导出中'], tablefmt='grid'))
    else:
        print(f"项目 {project_id} 没有检查点")


@cli.command()
@click.argument('project_id')
@click.pass_obj
def exports(service, project_id):
    """列出项目的导出"""
    rows = [
        [e.id, e.name, e.checkpoint_step, e.created.strftime('%Y-%m-%d %H:%M:%S')]
        for e in _run(service.get_exports(project_id))
    ]
    if rows:
        print(tabulate(rows, headers=['ID', '名称', '检查点', '创建时间'], tablefmt='grid'))
    else:
        print(f"项目 {project_id} 没有导出")


@cli.command()
@click.argument('project_id')
@click.pass_obj
def videos(service, project_id):
    """列出项目的视频"""
    rows = [[v.id, v.name, v.filename] for v in _run(service.get_videos(project_id))]
    if rows:
        print(tabulate(rows, headers=['ID', '名称', '文件'], tablefmt='grid'))
    else:
        print(f"项目 {project_id} 没有视频")
