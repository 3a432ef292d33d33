from hedera_analyzer.cli import cli

if __name__ == '__main__':
    cli(prog_name='hedera-analyzer')
